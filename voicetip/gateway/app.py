from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from fastapi.staticfiles import StaticFiles

from voicetip.gateway.api.v1 import routers as v1_routers
from voicetip.gateway.config import Settings, get_settings
from voicetip.gateway.exceptions import APIError
from voicetip.gateway.logging_config import (
    RequestContextMiddleware,
    api_error_handler,
    configure_logging,
    unhandled_exception_handler,
)
from voicetip.gateway.services import Services
from voicetip.gateway.storage import ARTIFACT_PREFIX


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.dependency_overrides[get_settings]()
    assert isinstance(settings, Settings)

    services: Services = getattr(app.state, "services", None) or Services(settings)
    await services.init(run_scanner=True, run_workers=settings.run_workers_in_gateway)
    app.state.services = services

    yield

    await services.shutdown()


def create_app(
    settings: Settings | None = None,
    services: Services | None = None,
) -> FastAPI:
    if settings is None:
        settings = Settings()  # type: ignore

    configure_logging(settings.log_dir)

    app = FastAPI(
        title="Voicetip Gateway",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.dependency_overrides[get_settings] = lambda: settings
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for r in v1_routers:
        app.include_router(r)

    settings.local_storage_path.mkdir(parents=True, exist_ok=True)
    app.mount(f"/{ARTIFACT_PREFIX}", StaticFiles(directory=settings.local_storage_path), name=ARTIFACT_PREFIX)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
