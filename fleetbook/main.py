import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError

from fleetbook.config import settings
from fleetbook.core.errors import ReservationError
from fleetbook.core.events import EventPublisher
from fleetbook.database import SessionLocal, check_db_connection
from fleetbook.repositories.sql_store import SqlReservationStore
from fleetbook.services.reservation_service import build_state_machine
from fleetbook.utils.exceptions import AppException
from fleetbook.middleware.error_handler import (
    app_exception_handler,
    reservation_error_handler,
    validation_exception_handler,
    integrity_error_handler,
    generic_exception_handler,
)

from fleetbook.api.v1 import reservations
from fleetbook.api.v1 import vehicles

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(session_factory=None, publisher: EventPublisher | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=VERSION,
        description="Vehicle reservation lifecycle & availability API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # ─── Core wiring ──────────────────────────────────────────────────────────
    app.state.session_factory = session_factory or SessionLocal
    app.state.state_machine   = build_state_machine(SqlReservationStore(app.state.session_factory), publisher)

    # ─── CORS ─────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ─── Exception Handlers ───────────────────────────────────────────────────
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(ReservationError, reservation_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # ─── Routers ──────────────────────────────────────────────────────────────
    PREFIX = "/api/v1"
    app.include_router(reservations.router, prefix=PREFIX, tags=["Reservations"])
    app.include_router(vehicles.router,     prefix=PREFIX, tags=["Vehicles"])

    # ─── Startup ──────────────────────────────────────────────────────────────
    @app.on_event("startup")
    def on_startup():
        if session_factory is None:
            ok = check_db_connection()
            logger.info("DB connected" if ok else "DB connection FAILED")

    # ─── Health ───────────────────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok", "app": settings.APP_NAME, "version": VERSION}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("fleetbook.main:app", host=settings.APP_HOST, port=settings.APP_PORT,
                reload=settings.is_development)
