"""
Business logic services.

Import services from their modules directly; this package does not
re-export them so guard, repositories and services can reference each
other without import cycles.
"""
