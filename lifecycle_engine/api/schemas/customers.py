from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from lifecycle_engine.core.models import CustomerMode, CustomerRequest, ServicePorts


class PortsModel(BaseModel):
    backend: int
    admin: int
    store: int


class CustomerCreateRequest(BaseModel):
    domain: str = Field(..., min_length=1, max_length=253)
    mode: Optional[CustomerMode] = None
    partner_id: Optional[str] = None

    db_name: Optional[str] = None
    app_db_user: Optional[str] = None
    app_db_password: Optional[str] = None

    redis_host: Optional[str] = None
    redis_port: Optional[int] = None
    redis_password: Optional[str] = None

    template_version: str = "latest"
    store_name: Optional[str] = None
    demo_pack: Optional[str] = None
    ports: Optional[PortsModel] = None

    def to_domain(self) -> CustomerRequest:
        data = self.model_dump(exclude={"ports"})
        ports = ServicePorts(**self.ports.model_dump()) if self.ports else None
        return CustomerRequest(ports=ports, **data)


class CustomerResponse(BaseModel):
    id: str
    domain: str
    mode: str
    partner_id: Optional[str]
    status: str
    ports: Optional[PortsModel]
    db_name: str
    app_db_user: str
    redis_host: Optional[str]
    redis_port: Optional[int]
    template_version: str
    failed_step: Optional[str]
    error_detail: Optional[str]
    created_at: str
    updated_at: str
    last_health_check_at: Optional[str]

    # Only on detail fetches with include_secrets
    app_db_password: Optional[str] = None
    redis_password: Optional[str] = None


class ConfigUpdateRequest(BaseModel):
    """Per-service overrides, e.g. {"backend": {"SMTP_HOST": "mail.example.com"}}."""
    changes: Dict[str, Dict[str, Union[bool, int, float, str]]]


class ConfigUpdateResponse(BaseModel):
    updated: Dict[str, List[str]]


class DeletionReportResponse(BaseModel):
    customer_id: str
    domain: str
    ok: bool
    results: List[Dict[str, Any]]


class CancelResponse(BaseModel):
    customer_id: str
    in_flight: bool


class DemoPackRequest(BaseModel):
    """A pack archive name under the demo packs directory, or an absolute path."""
    pack: str = Field(..., min_length=1)


class LogsResponse(BaseModel):
    service: str
    unit_id: str
    source: str
    out: Optional[str]
    error: Optional[str]
