from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from timekeeper.core.logging import configure_logging
from timekeeper.services.idle_sweep_worker import start_idle_sweep_task
from timekeeper.models import activity, company, project, time_entry, user, user_activity  # noqa: F401
from timekeeper.routers.auth import router as auth_router
from timekeeper.routers.companies import router as companies_router
from timekeeper.routers.idle import router as idle_router
from timekeeper.routers.projects import router as projects_router
from timekeeper.routers.time_entries import router as time_entries_router
from timekeeper.routers.users import router as users_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    task = start_idle_sweep_task()
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                # sweep crash during shutdown; already logged.
                pass


app = FastAPI(
    title="Timekeeper",
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(time_entries_router)
app.include_router(idle_router)
app.include_router(users_router)
app.include_router(projects_router)
app.include_router(companies_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "1.0.0",
    }
