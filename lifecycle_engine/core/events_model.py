"""Audit event model for customer lifecycle operations."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from lifecycle_engine.core.models import Customer, utcnow


@dataclass
class AuditEvent:
    """One-way audit record emitted for every mutating operation."""

    action: str
    target_id: str
    actor_id: Optional[str] = None
    target_type: str = "customer"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @staticmethod
    def for_customer(
        action: str,
        customer: Customer,
        actor_id: Optional[str] = None,
        **metadata: Any,
    ) -> "AuditEvent":
        return AuditEvent(
            action=f"customer.{action}",
            target_id=str(customer.customer_id),
            actor_id=actor_id,
            metadata={
                "domain": customer.domain,
                "status": customer.status.value,
                **metadata,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actorId": self.actor_id,
            "action": self.action,
            "targetType": self.target_type,
            "targetId": self.target_id,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }
