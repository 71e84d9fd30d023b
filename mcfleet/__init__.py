import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from mcfleet.core.config import APP_VERSION, ENV_FILE
from mcfleet.core.errors import InstanceNotFound, ManagerError, TemplateNotFound

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown."""
    from mcfleet.services import scheduled_tasks
    from mcfleet.services.broadcast import get_broadcast_hub
    from mcfleet.services.installer import get_installation_pipeline
    from mcfleet.services.instance_store import get_instance_store
    from mcfleet.services.log_monitor import get_log_monitor
    from mcfleet.services.supervisor import get_supervisor

    await asyncio.to_thread(get_instance_store().init_db)
    get_broadcast_hub().bind_loop(asyncio.get_running_loop())

    resumed = await get_supervisor().resume_monitoring()
    if resumed:
        logger.info("Resumed log monitoring for %d running server(s)", resumed)
    else:
        logger.info("No running servers detected")

    await scheduled_tasks.start_scheduler()
    logger.info("Scheduler started")

    yield

    await scheduled_tasks.stop_scheduler()
    await asyncio.to_thread(get_log_monitor().stop_all)
    get_installation_pipeline().cancel_all()
    get_broadcast_hub().bind_loop(None)
    logger.info("App shutting down")


def create_app():
    """FastAPI application factory."""
    load_dotenv(dotenv_path=ENV_FILE)

    secret_key = os.getenv("SECRET_KEY")
    if not secret_key:
        raise ValueError("ERROR: SECRET_KEY is missing in .env file!")

    app = FastAPI(
        title="mcfleet",
        version=APP_VERSION,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    @app.exception_handler(InstanceNotFound)
    async def instance_not_found_handler(request: Request, exc: InstanceNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(TemplateNotFound)
    async def template_not_found_handler(request: Request, exc: TemplateNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ManagerError)
    async def manager_error_handler(request: Request, exc: ManagerError):
        logger.warning("Unhandled manager error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    app.add_middleware(SessionMiddleware, secret_key=secret_key)

    from mcfleet.routers import console_ws, servers

    app.include_router(servers.router, tags=["Servers"])
    app.include_router(console_ws.router, tags=["Console"])

    return app
