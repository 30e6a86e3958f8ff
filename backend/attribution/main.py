import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from attribution.config import parse_csv_env
from attribution.dependencies import AttributionContainer, build_container
from attribution.routers import attributions, auth, blacklist, notifications, providers

logger = logging.getLogger(__name__)


def create_app(container: Optional[AttributionContainer] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down attribution services")
        app.state.attribution.close()

    app = FastAPI(title="Attribution API", version="0.1.0", lifespan=lifespan)
    app.state.attribution = container or build_container()

    cors_origins = parse_csv_env("CORS_ORIGINS", "*")
    allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    trusted_hosts = parse_csv_env("TRUSTED_HOSTS", "*")
    if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.include_router(attributions.router)
    app.include_router(providers.router)
    app.include_router(blacklist.router)
    app.include_router(notifications.router)
    app.include_router(auth.router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready():
        state: AttributionContainer = app.state.attribution
        return {
            "status": "ready",
            "repository": type(state.repository).__name__,
            "push_configured": bool(os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()),
            "default_max_distance_km": state.settings.default_max_distance_km,
            "round_ttl_minutes": state.settings.round_ttl_minutes,
        }

    return app


app = create_app()
