import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .api import (
    budget_changes,
    contingency,
    floors,
    investors,
    material_requests,
    phases,
    projects,
    purchase_orders,
    spending,
    system,
)
from .config import Base, SessionLocal, engine, settings
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .core.request_context import REQUEST_ID_HEADER, assign_request_id
from .core.security import SecurityHeadersMiddleware, log_security_warnings
from .services.consistency import commitment_guard
from .services.recalculation_queue import recalculation_queue

configure_logging(settings.log_level, settings.json_logs)
logger = logging.getLogger(__name__)

app = FastAPI(title="Cost Control Engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
register_exception_handlers(app)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = assign_request_id(request)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.on_event("startup")
def startup() -> None:
    # Tables are created on boot; there is no migration history to replay.
    Base.metadata.create_all(bind=engine)
    log_security_warnings(settings.jwt_secret, settings.commitment_consistency_mode)
    commitment_guard.mode = settings.commitment_consistency_mode
    recalculation_queue.configure(SessionLocal, mode=settings.recalculation_mode)
    recalculation_queue.start()
    logger.info(
        "Cost control engine started (consistency=%s, recalculation=%s)",
        settings.commitment_consistency_mode,
        settings.recalculation_mode,
    )


@app.on_event("shutdown")
def shutdown() -> None:
    recalculation_queue.stop()


app.include_router(projects.router)
app.include_router(phases.router)
app.include_router(floors.router)
app.include_router(purchase_orders.router)
app.include_router(spending.router)
app.include_router(material_requests.router)
app.include_router(contingency.router)
app.include_router(budget_changes.transfers_router)
app.include_router(budget_changes.adjustments_router)
app.include_router(investors.router)
app.include_router(system.router, prefix="/system", tags=["system"])
