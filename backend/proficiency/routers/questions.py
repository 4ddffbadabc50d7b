from __future__ import annotations
import logging
import random
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import AudioFile, ReadingPassage, ReadingTest, TestQuestion
from ..uploads import public_url
from .auth import User, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/questions", tags=["questions"])


def audio_url(audio: AudioFile) -> str:
	return public_url("audio", audio.filename)


def question_payload(q: TestQuestion) -> Dict[str, Any]:
	"""Candidate view of a question; correct answers stay on the server."""
	return {
		"id": q.id,
		"section": q.section,
		"questionType": q.question_type,
		"content": q.content,
		"orderIndex": q.order_index,
		"audioFileId": q.audio_file_id,
		"passageId": q.passage_id,
	}


def _active_questions(db: Session, *criteria) -> List[TestQuestion]:
	stmt = select(TestQuestion).where(TestQuestion.is_active.is_(True), *criteria).order_by(TestQuestion.order_index)
	return list(db.scalars(stmt))


def _listening(db: Session) -> Dict[str, Any]:
	with_questions = select(TestQuestion.audio_file_id).where(
		TestQuestion.section == "listening",
		TestQuestion.is_active.is_(True),
		TestQuestion.audio_file_id.is_not(None),
	)
	files = list(db.scalars(select(AudioFile).where(AudioFile.is_active.is_(True), AudioFile.id.in_(with_questions))))
	if not files:
		raise HTTPException(status_code=404, detail="No listening audio available")
	audio = random.choice(files)
	questions = _active_questions(db, TestQuestion.section == "listening", TestQuestion.audio_file_id == audio.id)
	return {
		"audioFile": {"id": audio.id, "originalName": audio.original_name, "duration": audio.duration},
		"audioUrl": audio_url(audio),
		"questions": [question_payload(q) for q in questions],
	}


def _reading(db: Session) -> Dict[str, Any]:
	test = db.scalar(select(ReadingTest).where(ReadingTest.status == "active").order_by(ReadingTest.created_at.desc()))
	if test is None:
		raise HTTPException(status_code=404, detail="No active reading test available")
	passages = db.scalars(
		select(ReadingPassage).where(ReadingPassage.test_id == test.id).order_by(ReadingPassage.passage_number)
	)
	out = []
	for p in passages:
		questions = _active_questions(db, TestQuestion.section == "reading", TestQuestion.passage_id == p.id)
		out.append({
			"passageNumber": p.passage_number,
			"title": p.title,
			"passage": p.text,
			"instructions": p.instructions,
			"questions": [question_payload(q) for q in questions],
		})
	return {"testId": test.id, "title": test.title, "passages": out}


@router.get("/{section}")
async def get_questions(section: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if section == "listening":
		return _listening(db)
	if section == "reading":
		return _reading(db)
	if section in ("writing", "speaking"):
		return {"questions": [question_payload(q) for q in _active_questions(db, TestQuestion.section == section)]}
	raise HTTPException(status_code=400, detail=f"unknown section {section!r}")
