# The only writer of session rows, answer records and evaluations

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .bands import calculate_overall_band, nearest_half, raw_score_to_band
from .models import AiEvaluation, AnswerDraft, ReadingPassage, TestAnswer, TestQuestion, TestSession
from .progression import Progress, Section, TransitionError, advance, can_enter, parse_section, transition
from .schemas import AnswerRecord, DraftRecord
from .scoring import ScoringResult, answer_matches, score_objective_answers
from .routers.auth import User

logger = logging.getLogger(__name__)

BAND_COLUMNS: Dict[str, str] = {
	"listening": "listening_band",
	"reading": "reading_band",
	"writing": "writing_band",
	"speaking": "speaking_band",
}


class SessionStore:
	def __init__(self, db: Session) -> None:
		self.db = db

	# ------------------------------------------------------------------
	# Sessions
	# ------------------------------------------------------------------

	def create(self, user_id: str, *, test_type: str = "academic", time_remaining: Optional[int] = None) -> TestSession:
		row = TestSession(user_id=user_id, test_type=test_type, time_remaining=time_remaining)
		self.db.add(row)
		self.db.commit()
		self.db.refresh(row)
		logger.info("Created %s test session %s for %s", test_type, row.id, user_id)
		return row

	def get(self, session_id: str) -> Optional[TestSession]:
		return self.db.get(TestSession, session_id)

	def require(self, session_id: str, user: Optional[User] = None) -> TestSession:
		row = self.get(session_id)
		if row is None:
			raise HTTPException(status_code=404, detail="Session not found")
		if user is not None and not user.is_admin and row.user_id != user.username:
			raise HTTPException(status_code=403, detail="Not your session")
		return row

	def list_all(self) -> List[TestSession]:
		return list(self.db.scalars(select(TestSession).order_by(TestSession.start_time.desc())))

	def _write_progress(self, row: TestSession, before: Progress, after: Progress) -> TestSession:
		values: Dict[str, Any] = {"current_section": after.current.value, "status": after.status, **after.flags()}
		if after.current == Section.COMPLETED and row.end_time is None:
			values["end_time"] = datetime.utcnow()
		result = self.db.execute(
			update(TestSession)
			.where(TestSession.id == row.id, TestSession.current_section == before.current.value)
			.values(**values)
			.execution_options(synchronize_session=False)
		)
		if result.rowcount != 1:
			self.db.rollback()
			raise HTTPException(status_code=409, detail="Session was updated concurrently; reload it and retry")
		self.db.commit()
		self.db.refresh(row)
		logger.info("Session %s moved %s -> %s", row.id, before.current.value, after.current.value)
		return row

	def move_to(self, row: TestSession, target: Any) -> TestSession:
		"""Apply a requested ``currentSection``; raises ``TransitionError`` on skip/regress."""
		before = Progress.from_session(row)
		after = transition(before, parse_section(target))
		if after == before:
			return row
		return self._write_progress(row, before, after)

	def advance_from(self, row: TestSession, from_section: Any) -> Tuple[TestSession, bool]:
		"""Complete ``from_section``. Returns ``(row, replayed)``.

		Completing a section that is already complete is a replay (double click,
		client retry) and returns the session unchanged.
		"""
		section = parse_section(from_section)
		before = Progress.from_session(row)
		if before.current == section:
			return self._write_progress(row, before, advance(before)), False
		if section in before.completed:
			logger.info("Replayed completion of %s on session %s", section.value, row.id)
			return row, True
		raise TransitionError(
			f"cannot complete {section.value} while the session is on {before.current.value}",
			current=before.current,
			target=section,
		)

	def update_details(self, row: TestSession, *, status: Optional[str] = None, time_remaining: Optional[int] = None) -> TestSession:
		if status is not None:
			if status == "completed":
				if row.current_section != Section.COMPLETED.value:
					raise TransitionError(
						"status can only become completed once the speaking section is finished",
						current=parse_section(row.current_section),
					)
			elif row.status == "completed":
				raise HTTPException(status_code=409, detail="Completed sessions cannot be paused or resumed")
			row.status = status
		if time_remaining is not None:
			row.time_remaining = time_remaining
		self.db.commit()
		self.db.refresh(row)
		return row

	def archive(self, row: TestSession) -> TestSession:
		if row.archived_at is None and row.status == "completed":
			row.archived_at = datetime.utcnow()
			self.db.commit()
			self.db.refresh(row)
			logger.info("Archived session %s", row.id)
		return row

	# ------------------------------------------------------------------
	# Answers
	# ------------------------------------------------------------------

	def _existing_answer(self, record: AnswerRecord) -> Optional[TestAnswer]:
		if record.idempotency_key:
			row = self.db.scalar(select(TestAnswer).where(TestAnswer.idempotency_key == record.idempotency_key))
			if row is not None:
				if row.session_id != record.session_id:
					raise HTTPException(status_code=409, detail="Idempotency key already used for another session")
				return row
		return self.db.scalar(
			select(TestAnswer).where(
				TestAnswer.session_id == record.session_id,
				TestAnswer.question_id == record.question_id,
				TestAnswer.section == record.section,
			)
		)

	@staticmethod
	def _require_open(section: str, progress: Progress) -> None:
		if not can_enter(parse_section(section), progress):
			raise HTTPException(
				status_code=409,
				detail=f"Answers for {section} are closed; session is on {progress.current.value}",
			)

	@staticmethod
	def _new_answer(session: TestSession, record: AnswerRecord) -> TestAnswer:
		return TestAnswer(
			session_id=session.id,
			question_id=record.question_id,
			section=record.section,
			answer=record.answer,
			time_spent=record.time_spent,
			idempotency_key=record.idempotency_key,
		)

	def record_answer(self, session: TestSession, record: AnswerRecord) -> Tuple[TestAnswer, bool]:
		"""Append one answer; the first answer per question and section wins."""
		existing = self._existing_answer(record)
		if existing is not None:
			logger.info("Duplicate answer for question %s on session %s", record.question_id, session.id)
			return existing, True
		self._require_open(record.section, Progress.from_session(session))
		row = self._new_answer(session, record)
		self.db.add(row)
		self._discard_draft(session.id, record.question_id, record.section)
		try:
			self.db.commit()
		except IntegrityError:
			# Lost a race with an identical submission
			self.db.rollback()
			existing = self._existing_answer(record)
			if existing is None:
				raise
			return existing, True
		self.db.refresh(row)
		return row, False

	def _stage_answers(self, session: TestSession, records: List[AnswerRecord]) -> List[Tuple[TestAnswer, bool]]:
		progress = Progress.from_session(session)
		staged: Dict[Tuple[str, str], TestAnswer] = {}
		staged_keys: Dict[str, TestAnswer] = {}
		out: List[Tuple[TestAnswer, bool]] = []
		for record in records:
			existing = (
				self._existing_answer(record)
				or staged.get((record.question_id, record.section))
				or (staged_keys.get(record.idempotency_key) if record.idempotency_key else None)
			)
			if existing is not None:
				out.append((existing, True))
				continue
			self._require_open(record.section, progress)
			row = self._new_answer(session, record)
			staged[(record.question_id, record.section)] = row
			if record.idempotency_key:
				staged_keys[record.idempotency_key] = row
			out.append((row, False))
		self.db.add_all(list(staged.values()))
		for question_id, section in staged:
			self._discard_draft(session.id, question_id, section)
		self.db.commit()
		for row in staged.values():
			self.db.refresh(row)
		return out

	def record_answers(self, session: TestSession, records: List[AnswerRecord]) -> List[Tuple[TestAnswer, bool]]:
		"""Store a page of answers in one transaction.

		Every record is checked before anything is written, so a refused record
		leaves the whole page unstored.
		"""
		try:
			return self._stage_answers(session, records)
		except IntegrityError:
			# An overlapping submission landed first; its rows now count as duplicates
			self.db.rollback()
			return self._stage_answers(session, records)

	def answers(self, session_id: str, section: Optional[str] = None) -> List[TestAnswer]:
		stmt = select(TestAnswer).where(TestAnswer.session_id == session_id)
		if section:
			stmt = stmt.where(TestAnswer.section == section)
		return list(self.db.scalars(stmt.order_by(TestAnswer.submitted_at)))

	# ------------------------------------------------------------------
	# Drafts
	# ------------------------------------------------------------------

	def save_draft(self, session: TestSession, record: DraftRecord) -> AnswerDraft:
		"""Upsert the working copy of an answer; the latest save wins."""
		final = self.db.scalar(
			select(TestAnswer.id).where(
				TestAnswer.session_id == session.id,
				TestAnswer.question_id == record.question_id,
				TestAnswer.section == record.section,
			)
		)
		if final is not None:
			raise HTTPException(status_code=409, detail=f"Question {record.question_id} has already been submitted")
		self._require_open(record.section, Progress.from_session(session))
		row = self._draft(session.id, record.question_id, record.section)
		if row is None:
			row = AnswerDraft(session_id=session.id, question_id=record.question_id, section=record.section)
			self.db.add(row)
		row.answer = record.answer
		row.time_spent = record.time_spent
		row.saved_at = datetime.utcnow()
		try:
			self.db.commit()
		except IntegrityError:
			# Two saves created the draft at once; apply this one on top
			self.db.rollback()
			row = self._draft(session.id, record.question_id, record.section)
			row.answer = record.answer
			row.time_spent = record.time_spent
			row.saved_at = datetime.utcnow()
			self.db.commit()
		self.db.refresh(row)
		return row

	def _draft(self, session_id: str, question_id: str, section: str) -> Optional[AnswerDraft]:
		return self.db.scalar(
			select(AnswerDraft).where(
				AnswerDraft.session_id == session_id,
				AnswerDraft.question_id == question_id,
				AnswerDraft.section == section,
			)
		)

	def _discard_draft(self, session_id: str, question_id: str, section: str) -> None:
		# Part of the caller's transaction
		self.db.execute(
			delete(AnswerDraft).where(
				AnswerDraft.session_id == session_id,
				AnswerDraft.question_id == question_id,
				AnswerDraft.section == section,
			)
		)

	def drafts(self, session_id: str, section: Optional[str] = None) -> List[AnswerDraft]:
		stmt = select(AnswerDraft).where(AnswerDraft.session_id == session_id)
		if section:
			stmt = stmt.where(AnswerDraft.section == section)
		return list(self.db.scalars(stmt.order_by(AnswerDraft.saved_at)))

	# ------------------------------------------------------------------
	# Evaluations
	# ------------------------------------------------------------------

	def find_evaluation(self, idempotency_key: Optional[str]) -> Optional[AiEvaluation]:
		if not idempotency_key:
			return None
		return self.db.scalar(select(AiEvaluation).where(AiEvaluation.idempotency_key == idempotency_key))

	def evaluations(self, session_id: str, section: Optional[str] = None) -> List[AiEvaluation]:
		stmt = select(AiEvaluation).where(AiEvaluation.session_id == session_id)
		if section:
			stmt = stmt.where(AiEvaluation.section == section)
		return list(self.db.scalars(stmt.order_by(AiEvaluation.evaluated_at)))

	def add_evaluation(
		self,
		session: TestSession,
		*,
		section: str,
		question_id: Optional[str],
		result: Dict[str, Any],
		band: float,
		feedback: str,
		provider: str,
		idempotency_key: Optional[str] = None,
	) -> Tuple[AiEvaluation, bool]:
		"""Store an evaluation and refresh the section band. Returns ``(row, duplicate)``.

		A request that loses the race on ``idempotency_key`` gets the stored
		evaluation back instead of a second one.
		"""
		row = AiEvaluation(
			session_id=session.id,
			section=section,
			question_id=question_id,
			criteria=result,
			feedback=feedback,
			band_score=band,
			ai_provider=provider,
			raw_response=result,
			idempotency_key=idempotency_key,
		)
		self.db.add(row)
		try:
			self.db.flush()
			# Latest evaluation per task counts; the section band is their mean
			latest: "OrderedDict[str, float]" = OrderedDict()
			for ev in self.evaluations(session.id, section):
				latest[ev.question_id or ev.id] = ev.band_score
			setattr(session, BAND_COLUMNS[section], nearest_half(sum(latest.values()) / len(latest)))
			self.db.commit()
		except IntegrityError:
			self.db.rollback()
			existing = self.find_evaluation(idempotency_key)
			if existing is None:
				raise
			if existing.session_id != session.id:
				raise HTTPException(status_code=409, detail="Idempotency key already used for another session")
			logger.info("Evaluation %s landed first for key %s; returning it", existing.id, idempotency_key)
			return existing, True
		self.db.refresh(row)
		logger.info("Stored %s evaluation %s (band %.1f) for session %s", section, row.id, band, session.id)
		return row, False

	# ------------------------------------------------------------------
	# Scoring
	# ------------------------------------------------------------------

	def _questions_for_scoring(self, section: str, answers: List[TestAnswer]) -> List[TestQuestion]:
		answered_ids = {a.question_id for a in answers}
		if not answered_ids:
			return []
		answered = list(self.db.scalars(select(TestQuestion).where(TestQuestion.id.in_(answered_ids))))
		stmt = select(TestQuestion).where(TestQuestion.section == section, TestQuestion.is_active.is_(True))
		if section == "listening":
			audio_ids = {q.audio_file_id for q in answered if q.audio_file_id}
			if audio_ids:
				stmt = stmt.where(TestQuestion.audio_file_id.in_(audio_ids))
		elif section == "reading":
			passage_ids = {q.passage_id for q in answered if q.passage_id}
			if passage_ids:
				test_ids = select(ReadingPassage.test_id).where(ReadingPassage.id.in_(passage_ids))
				sibling_passages = select(ReadingPassage.id).where(ReadingPassage.test_id.in_(test_ids))
				stmt = stmt.where(TestQuestion.passage_id.in_(sibling_passages))
		questions = {q.id: q for q in self.db.scalars(stmt)}
		for q in answered:
			if q.section == section:
				questions.setdefault(q.id, q)
		return list(questions.values())

	def score_section(self, session: TestSession, section: str) -> Tuple[ScoringResult, float]:
		if section not in ("listening", "reading"):
			raise HTTPException(status_code=400, detail="Use AI evaluation endpoints for writing/speaking")
		answers = self.answers(session.id, section)
		questions = self._questions_for_scoring(section, answers)
		result = score_objective_answers(answers, questions)
		by_id = {q.id: q for q in questions}
		for a in answers:
			question = by_id.get(a.question_id)
			if question is None or not question.correct_answers:
				continue
			a.is_correct = answer_matches(a.answer, question.correct_answers)
			a.score = 1.0 if a.is_correct else 0.0
		band = raw_score_to_band(result.raw_score, section)
		setattr(session, BAND_COLUMNS[section], band)
		self.db.commit()
		self.db.refresh(session)
		return result, band

	def complete_overall(self, session: TestSession) -> TestSession:
		bands = [getattr(session, BAND_COLUMNS[s]) for s in ("listening", "reading", "writing", "speaking")]
		if any(b is None for b in bands):
			raise HTTPException(status_code=400, detail="Not all sections completed")
		if session.current_section != Section.COMPLETED.value:
			raise TransitionError(
				f"finish the {session.current_section} section before calculating the overall band",
				current=parse_section(session.current_section),
				target=Section.COMPLETED,
			)
		session.overall_band = calculate_overall_band(*bands)
		session.status = "completed"
		if session.end_time is None:
			session.end_time = datetime.utcnow()
		self.db.commit()
		self.db.refresh(session)
		logger.info("Session %s overall band %.1f", session.id, session.overall_band)
		return session
