from __future__ import annotations
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import AudioRecording
from ..schemas import SectionName
from ..settings import settings
from ..store import SessionStore
from ..uploads import public_url, save_upload
from .auth import User, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recordings", tags=["recordings"])


@router.post("")
async def upload_recording(
	audio: UploadFile = File(...),
	session_id: str = Form(..., alias="sessionId"),
	section: SectionName = Form(default="speaking"),
	duration: Optional[float] = Form(default=None, ge=0),
	transcript: Optional[str] = Form(default=None),
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	session = SessionStore(db).require(session_id, user)
	filename, size = await save_upload(audio, "recordings", settings.recording_max_bytes)
	row = AudioRecording(
		session_id=session.id,
		section=section,
		audio_url=public_url("recordings", filename),
		transcript=transcript or None,
		duration=duration,
	)
	db.add(row)
	db.commit()
	db.refresh(row)
	logger.info("Stored %d byte %s recording for session %s", size, section, session.id)
	return {
		"id": row.id,
		"sessionId": row.session_id,
		"section": row.section,
		"audioUrl": row.audio_url,
		"transcript": row.transcript,
		"duration": row.duration,
		"recordedAt": row.recorded_at.isoformat(),
	}
