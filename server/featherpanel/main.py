from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from featherpanel.api import admin, responses
from featherpanel.api.deps import get_hook_registry
from featherpanel.api.routes import router
from featherpanel.core.errors import PanelError
from featherpanel.core.settings import get_settings
from featherpanel.db.session import engine
from featherpanel.services.addons import AddonManifest, ManifestError, attach_event_handlers
from featherpanel.services.events import get_event_bus
from featherpanel.services.migrations import MigrationRunner

logger = logging.getLogger(__name__)

settings = get_settings()


def attach_installed_addons() -> int:
    """Let every installed addon with registered hooks subscribe to the event bus."""

    registry = get_hook_registry()
    bus = get_event_bus()
    attached = 0
    addons_dir = settings.addons_dir
    if not addons_dir.is_dir():
        return 0
    for plugin_dir in sorted(path for path in addons_dir.iterdir() if path.is_dir()):
        try:
            manifest = AddonManifest.load(plugin_dir)
        except ManifestError:
            continue
        try:
            hooks = registry.resolve(plugin_dir.name, manifest.entrypoint)
        except Exception:  # noqa: BLE001 - addon factories are third-party code
            logger.exception("Failed to construct hooks for %s", plugin_dir.name)
            continue
        if hooks is not None and attach_event_handlers(hooks, bus).ok:
            attached += 1
    return attached


@asynccontextmanager
async def lifespan(app: FastAPI):
    report = MigrationRunner(engine).run_all(settings.core_migrations_dir, settings.addons_dir)
    if not report.ok:
        logger.error("Startup migrations reported failures\n%s", report.output)
    attached = attach_installed_addons()
    logger.info("Startup complete: %d migrations applied, %d addons attached", report.executed, attached)
    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PanelError)
async def panel_error_handler(request: Request, exc: PanelError):
    return responses.from_panel_error(exc)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    response = responses.error(str(exc.detail), str(exc.detail).upper().replace(" ", "_"), exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return responses.error("Invalid request", "VALIDATION_ERROR", 400, {"errors": jsonable_encoder(exc.errors())})


app.include_router(router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/admin")
