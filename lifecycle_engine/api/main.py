import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lifecycle_engine.api.routes.customers import router as customers_router
from lifecycle_engine.core.errors import LifecycleError, PartialFailure, ValidationError

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "validation_error": 422,
    "not_found": 404,
    "conflict": 409,
    "already_exists": 409,
    "invalid_transition": 409,
    "cancelled": 409,
    "resource_exhausted": 507,
    "supervisor_unavailable": 503,
    "connection_error": 503,
    "step_failed": 502,
    "partial_failure": 207,
}

app = FastAPI(title="Customer Lifecycle API")


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    status_code = ERROR_STATUS.get(exc.code, 500)

    if isinstance(exc, PartialFailure):
        return JSONResponse(status_code=status_code, content=exc.report.to_dict())

    body = {"error": exc.code, "detail": str(exc)}
    if isinstance(exc, ValidationError) and exc.key:
        body["key"] = exc.key

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(customers_router)
