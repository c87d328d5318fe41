from contextlib import asynccontextmanager

from fastapi import FastAPI

from auditchain.api.audit import router as audit_router
from auditchain.audit.setup import init_audit_service, shutdown_audit_service
from auditchain.config import settings
from auditchain.workers.setup import init_workers, shutdown_workers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    service = init_audit_service()
    service.start_workers(settings.anomaly_workers)
    await init_workers(service)
    yield
    # Shutdown
    await shutdown_workers()
    await shutdown_audit_service()


app = FastAPI(title="Audit Chain", version="0.1.0", lifespan=lifespan)

app.include_router(audit_router)


@app.get("/health")
async def health():
    return {"status": "healthy"}
