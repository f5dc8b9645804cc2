import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from .database import init_db
from .routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover
    init_db()
    logger.info("Memory Party database ready")
    yield


def create_app() -> FastAPI:
    """Application factory for the event memory game."""
    base_dir = Path(__file__).resolve().parent
    app = FastAPI(title="Memory Party", lifespan=lifespan)
    app.include_router(router)
    static_dir = base_dir / "static"
    app.mount("/static", StaticFiles(directory=static_dir), name="static")
    return app


app = create_app()
