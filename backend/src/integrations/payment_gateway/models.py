"""
Payment gateway request/response models.

Dataclasses for structured charge handling.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ChargeOutcome(str, Enum):
    """
    Synchronous result of a charge call.

    AMBIGUOUS covers timeouts, transport errors, 5xx and non-terminal
    statuses. The gateway's webhook is the source of truth for those.
    """
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"


@dataclass
class ChargeRequest:
    """One charge submission. attempt_id doubles as the idempotency key."""
    tenant_id: str
    attempt_id: str
    amount_cents: int
    currency: str
    purpose: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount_cents,
            "currency": self.currency,
            "metadata": dict(
                self.metadata,
                tenant_id=self.tenant_id,
                attempt_id=self.attempt_id,
                purpose=self.purpose,
            ),
        }


@dataclass
class ChargeResult:
    """Outcome of a charge call."""
    outcome: ChargeOutcome
    attempt_id: str
    gateway_charge_id: Optional[str] = None
    failure_code: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == ChargeOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome == ChargeOutcome.FAILED

    @property
    def is_ambiguous(self) -> bool:
        return self.outcome == ChargeOutcome.AMBIGUOUS

    @classmethod
    def from_response(cls, attempt_id: str, status_code: int, data: Dict[str, Any]) -> "ChargeResult":
        status = (data.get("status") or "").lower()
        if status == "succeeded":
            outcome = ChargeOutcome.SUCCEEDED
        elif status == "failed":
            outcome = ChargeOutcome.FAILED
        else:
            outcome = ChargeOutcome.AMBIGUOUS
        return cls(
            outcome=outcome,
            attempt_id=attempt_id,
            gateway_charge_id=data.get("id"),
            failure_code=data.get("failure_code"),
            status_code=status_code,
        )
