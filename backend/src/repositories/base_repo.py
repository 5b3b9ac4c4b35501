"""
Base repository with strict tenant isolation enforcement.

CRITICAL: All database operations go through a TenantIsolationGuard.
No query can access data across tenants.

Repositories never commit. Billing transitions span several rows (state,
ledger, audit) and the caller commits them as one unit of work.
"""

import logging
from typing import TypeVar, Generic, Optional
from abc import ABC, abstractmethod

from src.db_base import Base
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)

# Type variable for repository models
T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T], ABC):
    """
    Base repository scoped to the guard's tenant.

    All queries are automatically scoped by tenant_id.
    """

    def __init__(self, guard: TenantIsolationGuard):
        self.guard = guard
        self.db_session = guard.db
        self._model_class = self._get_model_class()

    @property
    def tenant_id(self) -> str:
        return self.guard.tenant_id

    @abstractmethod
    def _get_model_class(self) -> type[T]:
        """Return the SQLAlchemy model class for this repository."""

    def _scoped(self):
        return self.guard.scoped(self._model_class)

    def _locked(self, query):
        """
        Row-lock query results until commit and refresh them from the database.

        Pending changes are flushed first so the refresh cannot discard them.
        """
        self.guard.db.flush()
        return query.with_for_update().populate_existing()

    def get_by_id(self, entity_id: str) -> Optional[T]:
        return self.guard.get(self._model_class, entity_id)

    def add(self, entity: T) -> T:
        """Stage a new entity; tenant_id is always taken from the guard."""
        self.guard.add(entity)
        logger.debug(
            "Entity staged",
            extra={
                "tenant_id": self.tenant_id,
                "entity_type": self._model_class.__name__,
            }
        )
        return entity
