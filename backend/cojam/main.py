import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from cojam.core.config import settings
from cojam.core.db import SessionLocal
from cojam.core.errors import AppError, app_error_handler, unexpected_error_handler, validation_error_handler
from cojam.core.locks import KeyedLocks
from cojam.routers import me, realtime, sessions
from cojam.services import scheduler
from cojam.services.realtime import EventGateway

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("cojam")


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if settings.SCHEDULER_ENABLED:
        log.info("starting session scheduler")
        task = asyncio.create_task(
            scheduler.run_forever(
                SessionLocal,
                app.state.gateway,
                locks=app.state.locks,
                interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS,
            )
        )
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="CoJam API", lifespan=lifespan)

# one presence directory and one lock registry per process
app.state.gateway = EventGateway()
app.state.locks = KeyedLocks()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)
app.add_exception_handler(Exception, unexpected_error_handler)

app.include_router(me.router)
app.include_router(sessions.router)
app.include_router(realtime.router)


@app.get("/health")
def health():
    return {"status": "ok"}
