from __future__ import annotations
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import Field, TypeAdapter, ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db import get_db
from ..gemini_client import GeminiError
from ..models import (
	AiEvaluation,
	AudioFile,
	ListeningSection,
	ListeningTest,
	ReadingPassage,
	ReadingTest,
	TestQuestion,
	TestSession,
)
from ..ratelimit import check_ai_rate
from ..schemas import CamelModel, SectionName, SessionOut
from ..settings import settings
from ..store import SessionStore
from ..uploads import save_upload
from .ai import ExaminerSlot, get_examiner
from .auth import User, get_current_user, require_admin
from .questions import audio_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])

ALLOWED_AUDIO_MIMES = ("audio/mp3", "audio/mpeg", "audio/wav", "audio/m4a", "audio/ogg")

Difficulty = Literal["beginner", "intermediate", "advanced"]
TestStatus = Literal["draft", "active", "archived"]
QuestionType = Literal["multiple_choice", "fill_blank", "short_answer", "essay", "speaking_task"]


class QuestionIn(CamelModel):
	question_type: QuestionType
	content: Dict[str, Any]
	correct_answers: Optional[List[str]] = None
	order_index: int = Field(default=0, ge=0)


class QuestionCreate(QuestionIn):
	section: SectionName
	audio_file_id: Optional[str] = None
	passage_id: Optional[str] = None


class QuestionOut(CamelModel):
	id: str
	section: str
	question_type: str
	content: Dict[str, Any]
	correct_answers: Optional[List[str]] = None
	order_index: int
	audio_file_id: Optional[str] = None
	passage_id: Optional[str] = None
	generated_by: str


class AudioFileOut(CamelModel):
	id: str
	filename: str
	original_name: str
	mime_type: str
	size: int
	duration: Optional[float] = None
	transcript: Optional[str] = None
	section_number: Optional[int] = None
	test_id: Optional[str] = None
	uploaded_by: str
	is_active: bool
	uploaded_at: datetime


class TestCreate(CamelModel):
	title: str = Field(min_length=1, max_length=256)
	description: Optional[str] = None
	difficulty: Difficulty = "intermediate"
	status: TestStatus = "draft"


class TestUpdate(CamelModel):
	title: Optional[str] = Field(default=None, min_length=1, max_length=256)
	description: Optional[str] = None
	difficulty: Optional[Difficulty] = None
	status: Optional[TestStatus] = None


class TestOut(CamelModel):
	id: str
	title: str
	description: Optional[str] = None
	difficulty: str
	status: str
	created_by: str
	created_at: datetime
	updated_at: datetime


class PassageIn(CamelModel):
	passage_number: int = Field(ge=1, le=3)
	title: str = Field(min_length=1, max_length=256)
	text: str = Field(min_length=1)
	instructions: Optional[str] = None
	questions: List[QuestionIn] = []


class GenerateQuestionsRequest(CamelModel):
	transcript: Optional[str] = None
	count: int = Field(default=5, ge=1, le=20)


_questions_adapter = TypeAdapter(List[QuestionIn])


def _parse_questions(raw: Optional[str]) -> List[QuestionIn]:
	if not raw or not raw.strip():
		return []
	try:
		return _questions_adapter.validate_python(json.loads(raw))
	except (json.JSONDecodeError, ValidationError) as e:
		raise HTTPException(status_code=400, detail=f"Invalid questions JSON: {e}")


def _add_questions(db: Session, section: str, questions: List[QuestionIn], *, audio_file_id: Optional[str] = None, passage_id: Optional[str] = None, generated_by: str = "admin") -> List[TestQuestion]:
	rows = []
	for i, q in enumerate(questions):
		row = TestQuestion(
			section=section,
			question_type=q.question_type,
			content=q.content,
			correct_answers=q.correct_answers,
			order_index=q.order_index or i + 1,
			audio_file_id=audio_file_id,
			passage_id=passage_id,
			generated_by=generated_by,
		)
		db.add(row)
		rows.append(row)
	return rows


async def _store_audio(db: Session, audio: UploadFile, uploaded_by: str, **fields: Any) -> AudioFile:
	if audio.content_type not in ALLOWED_AUDIO_MIMES:
		raise HTTPException(status_code=400, detail="Only audio files are allowed")
	filename, size = await save_upload(audio, "audio", settings.audio_max_bytes)
	row = AudioFile(
		filename=filename,
		original_name=audio.filename or filename,
		mime_type=audio.content_type,
		size=size,
		uploaded_by=uploaded_by,
		**fields,
	)
	db.add(row)
	db.flush()
	logger.info("Stored audio %s (%d bytes) as %s", row.original_name, size, filename)
	return row


def _get_or_404(db: Session, model: Any, id_: str, label: str) -> Any:
	row = db.get(model, id_)
	if row is None:
		raise HTTPException(status_code=404, detail=f"{label} not found")
	return row


def _apply_update(row: Any, req: TestUpdate) -> None:
	for key, value in req.model_dump(exclude_unset=True).items():
		if value is not None:
			setattr(row, key, value)


# ----------------------------------------------------------------------
# Overview
# ----------------------------------------------------------------------

@router.get("/stats")
async def stats(db: Session = Depends(get_db)):
	total = db.scalar(select(func.count()).select_from(TestSession)) or 0
	completed = db.scalar(select(func.count()).select_from(TestSession).where(TestSession.status == "completed")) or 0
	average = db.scalar(
		select(func.avg(TestSession.overall_band)).where(TestSession.status == "completed", TestSession.overall_band.is_not(None))
	)
	return {
		"totalSessions": total,
		"completedSessions": completed,
		"averageBand": round(float(average), 2) if average is not None else 0,
		"aiEvaluations": db.scalar(select(func.count()).select_from(AiEvaluation)) or 0,
		"audioFiles": db.scalar(select(func.count()).select_from(AudioFile)) or 0,
		"systemStatus": "operational",
	}


@router.get("/sessions", response_model=List[SessionOut])
async def all_sessions(db: Session = Depends(get_db)):
	return SessionStore(db).list_all()


# ----------------------------------------------------------------------
# Audio
# ----------------------------------------------------------------------

@router.post("/audio/upload")
async def upload_audio(
	audio: UploadFile = File(...),
	uploaded_by: Optional[str] = Form(default=None, alias="uploadedBy"),
	transcript: Optional[str] = Form(default=None),
	admin: User = Depends(require_admin),
	db: Session = Depends(get_db),
):
	row = await _store_audio(db, audio, uploaded_by or admin.username, transcript=transcript or None)
	db.commit()
	db.refresh(row)
	return {
		"message": "Audio file uploaded successfully",
		"audioFile": AudioFileOut.model_validate(row).model_dump(by_alias=True, mode="json"),
		"audioUrl": audio_url(row),
	}


@router.get("/audio/list", response_model=List[AudioFileOut])
async def list_audio(db: Session = Depends(get_db)):
	return list(db.scalars(select(AudioFile).order_by(AudioFile.uploaded_at.desc())))


@router.post("/audio/{audio_id}/generate-questions")
async def generate_questions(
	audio_id: str,
	req: Optional[GenerateQuestionsRequest] = None,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	examiners: ExaminerSlot = Depends(get_examiner),
):
	req = req or GenerateQuestionsRequest()
	audio = _get_or_404(db, AudioFile, audio_id, "Audio file")
	transcript = (audio.transcript or req.transcript or "").strip()
	if not transcript:
		raise HTTPException(status_code=400, detail="Provide a transcript for this audio file before generating questions")
	check_ai_rate(user)
	try:
		generated = _questions_adapter.validate_python(await examiners.get().generate_listening_questions(transcript, req.count))
	except (GeminiError, ValidationError) as e:
		logger.warning("Question generation failed for audio %s: %s", audio_id, e)
		raise HTTPException(status_code=502, detail=f"Question generation failed: {e}")
	if not audio.transcript:
		audio.transcript = transcript
	rows = _add_questions(db, "listening", generated, audio_file_id=audio.id, generated_by="ai")
	db.commit()
	logger.info("Generated %d listening questions for audio %s", len(rows), audio.id)
	return {
		"message": f"Generated {len(rows)} questions",
		"questions": [QuestionOut.model_validate(r).model_dump(by_alias=True, mode="json") for r in rows],
	}


# ----------------------------------------------------------------------
# Listening tests
# ----------------------------------------------------------------------

@router.get("/listening-tests", response_model=List[TestOut])
async def list_listening_tests(db: Session = Depends(get_db)):
	return list(db.scalars(select(ListeningTest).order_by(ListeningTest.created_at.desc())))


@router.post("/listening-tests", response_model=TestOut)
async def create_listening_test(req: TestCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	row = ListeningTest(**req.model_dump(), created_by=admin.username)
	db.add(row)
	db.commit()
	db.refresh(row)
	return row


@router.patch("/listening-tests/{test_id}", response_model=TestOut)
async def update_listening_test(test_id: str, req: TestUpdate, db: Session = Depends(get_db)):
	row = _get_or_404(db, ListeningTest, test_id, "Listening test")
	_apply_update(row, req)
	db.commit()
	db.refresh(row)
	return row


@router.post("/listening-tests/{test_id}/sections")
async def add_listening_section(
	test_id: str,
	audio: UploadFile = File(...),
	section_number: int = Form(..., alias="sectionNumber", ge=1, le=4),
	title: str = Form(...),
	instructions: str = Form(default=""),
	duration: int = Form(default=600, ge=1),
	transcript: Optional[str] = Form(default=None),
	questions: Optional[str] = Form(default=None),
	admin: User = Depends(require_admin),
	db: Session = Depends(get_db),
):
	test = _get_or_404(db, ListeningTest, test_id, "Listening test")
	taken = db.scalar(
		select(ListeningSection).where(ListeningSection.test_id == test.id, ListeningSection.section_number == section_number)
	)
	if taken is not None:
		raise HTTPException(status_code=409, detail=f"Section {section_number} already exists for this test")
	parsed = _parse_questions(questions)
	audio_row = await _store_audio(
		db, audio, admin.username, transcript=transcript or None, section_number=section_number, test_id=test.id
	)
	section = ListeningSection(
		test_id=test.id,
		section_number=section_number,
		title=title,
		instructions=instructions,
		audio_file_id=audio_row.id,
		duration=duration,
	)
	db.add(section)
	rows = _add_questions(db, "listening", parsed, audio_file_id=audio_row.id)
	db.commit()
	return {
		"sectionId": section.id,
		"sectionNumber": section_number,
		"audioFile": AudioFileOut.model_validate(audio_row).model_dump(by_alias=True, mode="json"),
		"questions": [QuestionOut.model_validate(r).model_dump(by_alias=True, mode="json") for r in rows],
	}


# ----------------------------------------------------------------------
# Reading tests
# ----------------------------------------------------------------------

@router.get("/reading-tests", response_model=List[TestOut])
async def list_reading_tests(db: Session = Depends(get_db)):
	return list(db.scalars(select(ReadingTest).order_by(ReadingTest.created_at.desc())))


@router.post("/reading-tests", response_model=TestOut)
async def create_reading_test(req: TestCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	row = ReadingTest(**req.model_dump(), created_by=admin.username)
	db.add(row)
	db.commit()
	db.refresh(row)
	return row


@router.patch("/reading-tests/{test_id}", response_model=TestOut)
async def update_reading_test(test_id: str, req: TestUpdate, db: Session = Depends(get_db)):
	row = _get_or_404(db, ReadingTest, test_id, "Reading test")
	_apply_update(row, req)
	db.commit()
	db.refresh(row)
	return row


def _add_passage(db: Session, test: ReadingTest, passage: PassageIn) -> Dict[str, Any]:
	taken = db.scalar(
		select(ReadingPassage).where(ReadingPassage.test_id == test.id, ReadingPassage.passage_number == passage.passage_number)
	)
	if taken is not None:
		raise HTTPException(status_code=409, detail=f"Passage {passage.passage_number} already exists for this test")
	row = ReadingPassage(
		test_id=test.id,
		passage_number=passage.passage_number,
		title=passage.title,
		text=passage.text,
	)
	if passage.instructions:
		row.instructions = passage.instructions
	db.add(row)
	db.flush()
	questions = _add_questions(db, "reading", passage.questions, passage_id=row.id)
	db.commit()
	logger.info("Added passage %d to reading test %s with %d questions", row.passage_number, test.id, len(questions))
	return {
		"passageId": row.id,
		"passageNumber": row.passage_number,
		"title": row.title,
		"questions": [QuestionOut.model_validate(q).model_dump(by_alias=True, mode="json") for q in questions],
	}


@router.post("/reading-tests/{test_id}/passages")
async def add_passage(test_id: str, req: PassageIn, db: Session = Depends(get_db)):
	test = _get_or_404(db, ReadingTest, test_id, "Reading test")
	return _add_passage(db, test, req)


@router.post("/reading-tests/{test_id}/passages/upload")
async def upload_passage(
	test_id: str,
	file: UploadFile = File(...),
	passage_number: int = Form(..., alias="passageNumber"),
	title: str = Form(...),
	instructions: Optional[str] = Form(default=None),
	questions: Optional[str] = Form(default=None),
	db: Session = Depends(get_db),
):
	test = _get_or_404(db, ReadingTest, test_id, "Reading test")
	raw = await file.read()
	try:
		text = raw.decode("utf-8").strip()
	except UnicodeDecodeError:
		raise HTTPException(status_code=400, detail="Passage file must be UTF-8 text")
	try:
		passage = PassageIn(
			passage_number=passage_number,
			title=title,
			text=text,
			instructions=instructions,
			questions=_parse_questions(questions),
		)
	except ValidationError as e:
		raise HTTPException(status_code=400, detail=f"Invalid passage: {e}")
	return _add_passage(db, test, passage)


# ----------------------------------------------------------------------
# Questions
# ----------------------------------------------------------------------

@router.post("/questions", response_model=QuestionOut)
async def create_question(req: QuestionCreate, db: Session = Depends(get_db)):
	if req.audio_file_id:
		_get_or_404(db, AudioFile, req.audio_file_id, "Audio file")
	if req.passage_id:
		_get_or_404(db, ReadingPassage, req.passage_id, "Reading passage")
	[row] = _add_questions(db, req.section, [req], audio_file_id=req.audio_file_id, passage_id=req.passage_id)
	db.commit()
	db.refresh(row)
	return row
