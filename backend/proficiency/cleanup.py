from __future__ import annotations
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .models import AiEvaluation, AnswerDraft, AudioRecording, TestAnswer, TestSession
from .settings import settings

logger = logging.getLogger(__name__)


def _remove_recording_file(audio_url: str) -> None:
	prefix = "/uploads/"
	if audio_url.startswith(prefix):
		(Path(settings.upload_dir) / audio_url[len(prefix):]).unlink(missing_ok=True)


def purge_archived_sessions(db: Session, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
	"""Delete sessions archived more than ``retention_days`` ago with their answers,
	drafts, evaluations and recordings. Returns the number of sessions removed."""
	days = settings.session_retention_days if retention_days is None else retention_days
	threshold = (now or datetime.utcnow()) - timedelta(days=days)
	ids = list(db.scalars(select(TestSession.id).where(TestSession.archived_at.is_not(None), TestSession.archived_at < threshold)))
	if not ids:
		return 0

	for rec in db.scalars(select(AudioRecording).where(AudioRecording.session_id.in_(ids))):
		_remove_recording_file(rec.audio_url)
	for model in (TestAnswer, AnswerDraft, AiEvaluation, AudioRecording):
		db.execute(delete(model).where(model.session_id.in_(ids)))
	removed = db.execute(delete(TestSession).where(TestSession.id.in_(ids))).rowcount or 0
	db.commit()
	logger.info("Purged %d archived sessions older than %d days", removed, days)
	return removed
