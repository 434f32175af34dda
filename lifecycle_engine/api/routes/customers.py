# lifecycle_engine/api/routes/customers.py
"""Customer lifecycle API routes."""

from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, status

from lifecycle_engine.api.container import get_lifecycle_manager
from lifecycle_engine.api.schemas.customers import (
    CancelResponse,
    ConfigUpdateRequest,
    ConfigUpdateResponse,
    CustomerCreateRequest,
    CustomerResponse,
    DeletionReportResponse,
    DemoPackRequest,
    LogsResponse,
)
from lifecycle_engine.orchestrator.lifecycle import CustomerLifecycleManager

router = APIRouter(prefix="/customers", tags=["customers"])


def actor(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_actor_id


# ============================================
# Create / Read
# ============================================

@router.post("/", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
def create_customer(
    request: CustomerCreateRequest,
    wait: bool = Query(default=True),
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Register and provision a customer.

    With `wait=false` the record comes back PENDING and provisioning
    continues in the background.
    """
    customer = manager.create(request.to_domain(), actor_id=actor_id, wait=wait)
    return customer.to_view()


@router.get("/", response_model=List[CustomerResponse])
def list_customers(
    partner_id: Optional[str] = None,
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.list(partner_id=partner_id)


@router.get("/{customer_id}", response_model=CustomerResponse)
def get_customer(
    customer_id: UUID,
    include_secrets: bool = False,
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.get(customer_id, include_secrets=include_secrets)


# ============================================
# Process control
# ============================================

@router.post("/{customer_id}/start", response_model=CustomerResponse)
def start_customer(
    customer_id: UUID,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.start(customer_id, actor_id=actor_id).to_view()


@router.post("/{customer_id}/stop", response_model=CustomerResponse)
def stop_customer(
    customer_id: UUID,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.stop(customer_id, actor_id=actor_id).to_view()


@router.post("/{customer_id}/restart", response_model=CustomerResponse)
def restart_customer(
    customer_id: UUID,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.restart(customer_id, actor_id=actor_id).to_view()


@router.post("/{customer_id}/services/{service}/restart", response_model=CustomerResponse)
def restart_customer_service(
    customer_id: UUID,
    service: str,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.restart_service(customer_id, service, actor_id=actor_id).to_view()


# ============================================
# Provisioning control
# ============================================

@router.post("/{customer_id}/retry", response_model=CustomerResponse)
def retry_customer(
    customer_id: UUID,
    wait: bool = Query(default=True),
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.retry(customer_id, actor_id=actor_id, wait=wait).to_view()


@router.post("/{customer_id}/cancel", response_model=CancelResponse)
def cancel_customer(
    customer_id: UUID,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    in_flight = manager.cancel(customer_id, actor_id=actor_id)
    return CancelResponse(customer_id=str(customer_id), in_flight=in_flight)


# ============================================
# Maintenance
# ============================================

@router.post("/{customer_id}/migrate", response_model=CustomerResponse)
def migrate_customer(
    customer_id: UUID,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.run_migrations(customer_id, actor_id=actor_id).to_view()


@router.post("/{customer_id}/seed", response_model=CustomerResponse)
def seed_customer(
    customer_id: UUID,
    kind: str = Query(default="essential"),
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.seed(customer_id, kind, actor_id=actor_id).to_view()


@router.post("/{customer_id}/demo-pack", response_model=CustomerResponse)
def import_customer_demo_pack(
    customer_id: UUID,
    request: DemoPackRequest,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    """Replaces the customer's data. A failed import leaves it untouched."""
    return manager.import_demo_pack(customer_id, request.pack, actor_id=actor_id).to_view()


@router.get("/{customer_id}/logs", response_model=LogsResponse)
def get_customer_logs(
    customer_id: UUID,
    service: str = Query(default="backend"),
    lines: int = Query(default=100),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.logs(customer_id, service=service, lines=lines)


# ============================================
# Delete
# ============================================

@router.delete("/{customer_id}", response_model=CustomerResponse)
def soft_delete_customer(
    customer_id: UUID,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.soft_delete(customer_id, actor_id=actor_id).to_view()


@router.delete("/{customer_id}/hard", response_model=DeletionReportResponse)
def hard_delete_customer(
    customer_id: UUID,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    """Incomplete cleanups answer 207 with the same report body."""
    return manager.hard_delete(customer_id, actor_id=actor_id).to_dict()


# ============================================
# Configuration
# ============================================

@router.get("/{customer_id}/config", response_model=Dict[str, Dict[str, str]])
def get_customer_config(
    customer_id: UUID,
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.get_config(customer_id)


@router.patch("/{customer_id}/config", response_model=ConfigUpdateResponse)
def update_customer_config(
    customer_id: UUID,
    request: ConfigUpdateRequest,
    actor_id: Optional[str] = Depends(actor),
    manager: CustomerLifecycleManager = Depends(get_lifecycle_manager),
):
    updated = manager.update_config(customer_id, request.changes, actor_id=actor_id)
    return ConfigUpdateResponse(updated=updated)
