import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.db import Base, engine
from .core.errors import register_exception_handlers
from .core.logging_context import RequestIdMiddleware, configure_logging
from .routes_availability import router as availability_router
from .routes_bookings import router as bookings_router
from .routes_calendar import router as calendar_router
from .routes_service_areas import router as service_areas_router
from .routes_travel import router as travel_router
from .routes_walker_route import router as walker_route_router


settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Walker Scheduling Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)

register_exception_handlers(app)

app.include_router(availability_router)
app.include_router(calendar_router)
app.include_router(service_areas_router)
app.include_router(bookings_router)
app.include_router(walker_route_router)
app.include_router(travel_router)


@app.on_event("startup")
async def on_startup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


@app.get("/health")
async def health():
    return {"status": "ok"}
