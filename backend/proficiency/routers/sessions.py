from __future__ import annotations
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from sqlalchemy.orm import Session

from ..bands import band_descriptor
from ..db import get_db
from ..progression import Progress, Section, TransitionError, parse_section, redirect_for, route_for, section_progress
from ..schemas import AnswerOut, CamelModel, DraftOut, EvaluationOut, ProgressName, SectionName, SessionOut
from ..store import SessionStore
from ..utils import session_summary
from .auth import User, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

# Three hours on the test clock
DEFAULT_TIME_REMAINING = 3 * 60 * 60


class CreateSessionRequest(CamelModel):
	test_type: Literal["academic", "general"] = "academic"
	time_remaining: Optional[int] = Field(default=DEFAULT_TIME_REMAINING, ge=0)


class UpdateSessionRequest(CamelModel):
	current_section: Optional[ProgressName] = None
	status: Optional[Literal["in_progress", "completed", "paused"]] = None
	time_remaining: Optional[int] = Field(default=None, ge=0)


class AdvanceRequest(CamelModel):
	from_section: SectionName


class AdvanceResponse(CamelModel):
	session: SessionOut
	route: str
	replayed: bool = False


class EnterResponse(CamelModel):
	allowed: bool
	current_section: ProgressName
	redirect: Optional[str] = None
	progress: float


def _conflict(err: TransitionError) -> HTTPException:
	return HTTPException(status_code=409, detail=str(err))


@router.post("", response_model=SessionOut)
async def create_session(req: CreateSessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return SessionStore(db).create(user.username, test_type=req.test_type, time_remaining=req.time_remaining)


@router.get("/{session_id}", response_model=SessionOut)
async def get_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return SessionStore(db).require(session_id, user)


@router.patch("/{session_id}", response_model=SessionOut)
async def update_session(session_id: str, req: UpdateSessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	row = store.require(session_id, user)
	try:
		if req.current_section is not None:
			row = store.move_to(row, req.current_section)
		if req.status is not None or req.time_remaining is not None:
			row = store.update_details(row, status=req.status, time_remaining=req.time_remaining)
	except TransitionError as err:
		raise _conflict(err)
	return row


@router.post("/{session_id}/advance", response_model=AdvanceResponse)
async def advance_session(session_id: str, req: AdvanceRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	row = store.require(session_id, user)
	try:
		row, replayed = store.advance_from(row, req.from_section)
	except TransitionError as err:
		raise _conflict(err)
	return AdvanceResponse(
		session=SessionOut.model_validate(row),
		route=route_for(parse_section(row.current_section), row.id),
		replayed=replayed,
	)


@router.get("/{session_id}/enter/{section}", response_model=EnterResponse)
async def enter_section(session_id: str, section: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = SessionStore(db).require(session_id, user)
	try:
		target = parse_section(section)
	except ValueError as err:
		raise HTTPException(status_code=400, detail=str(err))
	progress = Progress.from_session(row)
	redirect = redirect_for(target, progress, row.id)
	return EnterResponse(
		allowed=redirect is None,
		current_section=progress.current.value,
		redirect=redirect,
		progress=section_progress(progress.current),
	)


@router.get("/{session_id}/answers", response_model=List[AnswerOut])
async def list_answers(session_id: str, section: Optional[SectionName] = None, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	store.require(session_id, user)
	return store.answers(session_id, section)


@router.get("/{session_id}/drafts", response_model=List[DraftOut])
async def list_drafts(session_id: str, section: Optional[SectionName] = None, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	store.require(session_id, user)
	return store.drafts(session_id, section)


@router.get("/{session_id}/evaluations", response_model=List[EvaluationOut])
async def list_evaluations(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	store.require(session_id, user)
	return store.evaluations(session_id)


@router.post("/{session_id}/score/{section}")
async def score_section(session_id: str, section: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	row = store.require(session_id, user)
	if section not in ("listening", "reading", "writing", "speaking"):
		raise HTTPException(status_code=400, detail=f"unknown section {section!r}")
	result, band = store.score_section(row, section)
	return {
		"totalQuestions": result.total_questions,
		"correctAnswers": result.correct_answers,
		"rawScore": result.raw_score,
		"accuracy": result.accuracy,
		"band": band,
	}


@router.post("/{session_id}/calculate-scores")
async def calculate_scores(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	row = store.require(session_id, user)
	debug: Dict[str, Any] = {}
	for section in ("listening", "reading"):
		if section in Progress.from_session(row).completed:
			result, band = store.score_section(row, section)
			debug[section] = {**result.as_dict(), "band": band}
	if row.overall_band is None and row.current_section == Section.COMPLETED.value:
		bands = [row.listening_band, row.reading_band, row.writing_band, row.speaking_band]
		if all(b is not None for b in bands):
			row = store.complete_overall(row)
	return {"scores": SessionOut.model_validate(row).model_dump(by_alias=True, mode="json"), "debug": debug}


@router.post("/{session_id}/calculate-overall", response_model=SessionOut)
async def calculate_overall(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	row = store.require(session_id, user)
	try:
		return store.complete_overall(row)
	except TransitionError as err:
		raise _conflict(err)


@router.get("/{session_id}/results")
async def get_results(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	row = store.require(session_id, user)
	if row.current_section != Section.COMPLETED.value:
		raise HTTPException(status_code=409, detail=f"Results are available once the test is completed; session is on {row.current_section}")
	evaluations = store.evaluations(row.id)
	answers_count = len(store.answers(row.id))
	row = store.archive(row)
	return {
		"session": SessionOut.model_validate(row).model_dump(by_alias=True, mode="json"),
		"evaluations": [EvaluationOut.model_validate(e).model_dump(by_alias=True, mode="json") for e in evaluations],
		"descriptor": band_descriptor(row.overall_band),
		"summary": session_summary(row, answers_count),
	}
