import asyncio
import logging

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError

from .cleanup import purge_archived_sessions
from .db import Base, engine, session_scope
from .settings import settings
from .routers import auth
from .routers import sessions
from .routers import answers
from .routers import ai
from .routers import questions
from .routers import admin
from .routers import recordings

logging.basicConfig(
	level=settings.log_level.upper(),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Proficiency Test API")
app.include_router(auth.router)
app.include_router(sessions.router)
app.include_router(answers.router)
app.include_router(ai.router)
app.include_router(questions.router)
app.include_router(admin.router)
app.include_router(recordings.router)

# Uploaded audio and recordings; the directory is created on first upload
app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")


@app.get("/info")
def root():
	return {"status": "ok", "gemini_configured": bool(settings.gemini_api_key)}


def _purge_once() -> None:
	try:
		with session_scope() as db:
			purge_archived_sessions(db)
	except SQLAlchemyError:
		logger.exception("Archived session cleanup failed")


async def _cleanup_watcher():
	# Daily after the startup run
	while True:
		await asyncio.sleep(24 * 60 * 60)
		_purge_once()


@app.on_event("startup")
async def startup_event():
	Base.metadata.create_all(bind=engine)
	_purge_once()
	asyncio.create_task(_cleanup_watcher())
