import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from automations import config
from automations.api.routes import router
from automations.core.scheduler import Scheduler
from automations.db.database import init_db

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    task = None
    if config.EMBEDDED_WORKER:
        task = asyncio.create_task(Scheduler(config.WORKER_ID).start())
    else:
        logger.info("Embedded worker disabled; expecting external tick calls or run_worker.py")
    yield
    if task:
        task.cancel()


app = FastAPI(title="Workflow Automations", lifespan=lifespan)
app.include_router(router)
