from __future__ import annotations
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas import (
	AnswerOut,
	AnswerRecord,
	DraftOut,
	DraftRecord,
	SubmitAnswerResponse,
	SubmitAnswersRequest,
	SubmitAnswersResponse,
)
from ..store import SessionStore
from .auth import User, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["answers"])


def _submit(store: SessionStore, record: AnswerRecord, user: User) -> SubmitAnswerResponse:
	session = store.require(record.session_id, user)
	row, duplicate = store.record_answer(session, record)
	return SubmitAnswerResponse(answer=AnswerOut.model_validate(row), duplicate=duplicate)


@router.post("/test/submit-answer", response_model=SubmitAnswerResponse)
async def submit_answer(record: AnswerRecord, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return _submit(SessionStore(db), record, user)


# Older clients post single answers here
@router.post("/answers", response_model=SubmitAnswerResponse)
async def create_answer(record: AnswerRecord, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return _submit(SessionStore(db), record, user)


@router.post("/test/submit-answers", response_model=SubmitAnswersResponse)
async def submit_answers(req: SubmitAnswersRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	"""Submit a page of answers. All records must belong to one session.

	The page is stored all or nothing; records already on file come back with
	their stored value and count as duplicates.
	"""
	session_ids = {r.session_id for r in req.answers}
	if len(session_ids) != 1:
		raise HTTPException(status_code=400, detail="All answers in a batch must belong to the same session")
	store = SessionStore(db)
	session = store.require(session_ids.pop(), user)
	results = store.record_answers(session, req.answers)
	duplicates = sum(1 for _, duplicate in results if duplicate)
	logger.info("Batch of %d answers for session %s (%d duplicates)", len(results), session.id, duplicates)
	return SubmitAnswersResponse(
		answers=[AnswerOut.model_validate(row) for row, _ in results],
		created=len(results) - duplicates,
		duplicates=duplicates,
	)


@router.put("/test/draft", response_model=DraftOut)
async def save_draft(record: DraftRecord, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	store = SessionStore(db)
	session = store.require(record.session_id, user)
	return store.save_draft(session, record)
