#lifecycle_engine\core\state_machine.py

from datetime import datetime

from lifecycle_engine.core.errors import InvalidTransition
from lifecycle_engine.core.models import Customer, CustomerStatus, utcnow


ALLOWED_TRANSITIONS = {
    CustomerStatus.PENDING: {
        CustomerStatus.PROVISIONING,
        CustomerStatus.ERROR,
        CustomerStatus.DELETED,
    },
    CustomerStatus.PROVISIONING: {
        CustomerStatus.RUNNING,
        CustomerStatus.ERROR,
    },
    CustomerStatus.RUNNING: {
        CustomerStatus.STOPPED,
        CustomerStatus.ERROR,
        CustomerStatus.DELETING,
        CustomerStatus.DELETED,
    },
    CustomerStatus.STOPPED: {
        CustomerStatus.RUNNING,
        CustomerStatus.ERROR,
        CustomerStatus.DELETING,
        CustomerStatus.DELETED,
    },
    CustomerStatus.ERROR: {
        CustomerStatus.PENDING,
        CustomerStatus.RUNNING,
        CustomerStatus.STOPPED,
        CustomerStatus.DELETING,
        CustomerStatus.DELETED,
    },
    CustomerStatus.DELETING: {
        CustomerStatus.DELETED,
    },
}

# Statuses from which start/stop/restart may act.
OPERABLE_STATES = frozenset({
    CustomerStatus.RUNNING,
    CustomerStatus.STOPPED,
    CustomerStatus.ERROR,
})


def can_transition(current: CustomerStatus, new_status: CustomerStatus) -> bool:
    if current == new_status:
        return True
    return new_status in ALLOWED_TRANSITIONS.get(current, set())


class CustomerStateMachine:
    @staticmethod
    def transition(
        customer: Customer,
        new_status: CustomerStatus,
        *,
        now: datetime | None = None,
    ) -> Customer:
        now = now or utcnow()

        current = customer.status

        if current == new_status:
            return customer

        if not can_transition(current, new_status):
            raise InvalidTransition(
                f"Cannot transition {customer.domain} from {current.value} to {new_status.value}"
            )

        # Timestamp semantics
        if new_status == CustomerStatus.DELETED:
            customer.deleted_at = now

        elif new_status in (CustomerStatus.PROVISIONING, CustomerStatus.RUNNING):
            customer.failed_step = None
            customer.error_detail = None

        customer.status = new_status
        customer.updated_at = now
        return customer

    @staticmethod
    def require(customer: Customer, allowed: frozenset | set, operation: str) -> None:
        """Reject an operation unless the customer is in one of `allowed`."""
        if customer.status not in allowed:
            raise InvalidTransition(
                f"Cannot {operation} {customer.domain} while {customer.status.value}"
            )
