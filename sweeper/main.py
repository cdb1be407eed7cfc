from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .errors import DispatchError
from .logging import setup_logging, RequestIdMiddleware
from .routes.dispatch import router as dispatch_router
from .services.events import EventBus
from .services.geofence import GeoService
from .services.pricing import PricingConfig, PricingEngine
from .services.routing import routing_from_settings


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Dispatch services shared by all requests
    app.state.geo = GeoService.from_settings(settings, routing=routing_from_settings())
    app.state.pricing = PricingEngine(PricingConfig.from_settings(settings))
    app.state.event_bus = EventBus()

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        log = structlog.get_logger(__name__)
        if exc.status_code >= 500:
            log.error("dispatch_error", error=exc.code, detail=exc.message, path=request.url.path)
        else:
            log.info("dispatch_rejected", error=exc.code, detail=exc.message, path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Routers
    app.include_router(dispatch_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    if settings.auto_create_db:
        @app.on_event("startup")
        def _create_tables():
            from .models import models  # noqa: F401  register tables
            Base.metadata.create_all(bind=engine)

    return app


app = create_app()
