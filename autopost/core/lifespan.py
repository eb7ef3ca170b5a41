import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from autopost.core.database import dispose_engine
from autopost.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging after uvicorn starts and release the engine on shutdown."""
  from autopost.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("autopost.core.lifespan")

  try:
    initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:
    # Keep serving with the default handlers if the log directory is unusable.
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  if not settings.task_secret:
    logger.warning("AUTOPOST_TASK_SECRET is unset; orchestration routes will refuse every request.")

  yield

  await dispose_engine()
  logger.info("Shutdown complete - database engine disposed.")
