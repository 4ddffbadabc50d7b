from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Float, ForeignKey, Integer, JSON, Text, UniqueConstraint
from .db import Base


def _new_id() -> str:
	return uuid.uuid4().hex


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	# student | admin | examiner
	role = Column(String(16), default="student", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# JWT jti
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TestSession(Base):
	__tablename__ = "test_sessions"
	id = Column(String(32), primary_key=True, default=_new_id)
	user_id = Column(String(128), nullable=False, index=True)
	test_type = Column(String(16), default="academic", nullable=False)
	# in_progress | completed | paused
	status = Column(String(16), default="in_progress", nullable=False)
	# listening | reading | writing | speaking | completed
	current_section = Column(String(16), default="listening", nullable=False)
	listening_completed = Column(Boolean, default=False, nullable=False)
	reading_completed = Column(Boolean, default=False, nullable=False)
	writing_completed = Column(Boolean, default=False, nullable=False)
	speaking_completed = Column(Boolean, default=False, nullable=False)
	start_time = Column(DateTime, default=datetime.utcnow, nullable=False)
	end_time = Column(DateTime, nullable=True)
	# Seconds left on the test clock when the session was created or last paused
	time_remaining = Column(Integer, nullable=True)
	overall_band = Column(Float, nullable=True)
	listening_band = Column(Float, nullable=True)
	reading_band = Column(Float, nullable=True)
	writing_band = Column(Float, nullable=True)
	speaking_band = Column(Float, nullable=True)
	archived_at = Column(DateTime, nullable=True)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class TestAnswer(Base):
	__tablename__ = "test_answers"
	__table_args__ = (UniqueConstraint("session_id", "question_id", "section", name="uq_answer_per_question"),)
	id = Column(String(32), primary_key=True, default=_new_id)
	session_id = Column(String(32), ForeignKey("test_sessions.id"), nullable=False, index=True)
	question_id = Column(String(64), nullable=False)
	section = Column(String(16), nullable=False)
	answer = Column(JSON, nullable=True)
	is_correct = Column(Boolean, nullable=True)
	score = Column(Float, nullable=True)
	time_spent = Column(Integer, default=0, nullable=False)
	idempotency_key = Column(String(64), nullable=True, unique=True)
	submitted_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AnswerDraft(Base):
	__tablename__ = "answer_drafts"
	__table_args__ = (UniqueConstraint("session_id", "question_id", "section", name="uq_draft_per_question"),)
	# Working copy saved while the candidate edits; removed once the answer is submitted
	id = Column(String(32), primary_key=True, default=_new_id)
	session_id = Column(String(32), ForeignKey("test_sessions.id"), nullable=False, index=True)
	question_id = Column(String(64), nullable=False)
	section = Column(String(16), nullable=False)
	answer = Column(JSON, nullable=True)
	time_spent = Column(Integer, default=0, nullable=False)
	saved_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AiEvaluation(Base):
	__tablename__ = "ai_evaluations"
	id = Column(String(32), primary_key=True, default=_new_id)
	session_id = Column(String(32), ForeignKey("test_sessions.id"), nullable=False, index=True)
	# writing | speaking
	section = Column(String(16), nullable=False)
	question_id = Column(String(64), nullable=True)
	criteria = Column(JSON, nullable=False)
	feedback = Column(Text, nullable=False, default="")
	band_score = Column(Float, nullable=False)
	ai_provider = Column(String(32), default="gemini", nullable=False)
	raw_response = Column(JSON, nullable=True)
	idempotency_key = Column(String(64), nullable=True, unique=True)
	evaluated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AudioRecording(Base):
	__tablename__ = "audio_recordings"
	id = Column(String(32), primary_key=True, default=_new_id)
	session_id = Column(String(32), ForeignKey("test_sessions.id"), nullable=False, index=True)
	section = Column(String(16), nullable=False)
	audio_url = Column(String(512), nullable=False)
	transcript = Column(Text, nullable=True)
	duration = Column(Float, nullable=True)
	recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AudioFile(Base):
	__tablename__ = "audio_files"
	id = Column(String(32), primary_key=True, default=_new_id)
	filename = Column(String(256), nullable=False)
	original_name = Column(String(256), nullable=False)
	mime_type = Column(String(64), nullable=False)
	size = Column(Integer, nullable=False)
	duration = Column(Float, nullable=True)
	transcript = Column(Text, nullable=True)
	section_number = Column(Integer, nullable=True)
	test_id = Column(String(32), nullable=True)
	uploaded_by = Column(String(128), nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	uploaded_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TestQuestion(Base):
	__tablename__ = "test_questions"
	id = Column(String(32), primary_key=True, default=_new_id)
	section = Column(String(16), nullable=False, index=True)
	# multiple_choice | fill_blank | short_answer | essay | speaking_task
	question_type = Column(String(32), nullable=False)
	content = Column(JSON, nullable=False)
	correct_answers = Column(JSON, nullable=True)
	order_index = Column(Integer, default=0, nullable=False)
	audio_file_id = Column(String(32), ForeignKey("audio_files.id"), nullable=True, index=True)
	passage_id = Column(String(32), ForeignKey("reading_passages.id"), nullable=True, index=True)
	is_active = Column(Boolean, default=True, nullable=False)
	# admin | ai
	generated_by = Column(String(16), default="admin", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ListeningTest(Base):
	__tablename__ = "listening_tests"
	id = Column(String(32), primary_key=True, default=_new_id)
	title = Column(String(256), nullable=False)
	description = Column(Text, nullable=True)
	difficulty = Column(String(16), default="intermediate", nullable=False)
	# draft | active | archived
	status = Column(String(16), default="draft", nullable=False)
	created_by = Column(String(128), nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ListeningSection(Base):
	__tablename__ = "listening_sections"
	__table_args__ = (UniqueConstraint("test_id", "section_number", name="uq_listening_section_number"),)
	id = Column(String(32), primary_key=True, default=_new_id)
	test_id = Column(String(32), ForeignKey("listening_tests.id"), nullable=False, index=True)
	section_number = Column(Integer, nullable=False)
	title = Column(String(256), nullable=False)
	instructions = Column(Text, nullable=False, default="")
	audio_file_id = Column(String(32), ForeignKey("audio_files.id"), nullable=False)
	# Seconds
	duration = Column(Integer, default=600, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ReadingTest(Base):
	__tablename__ = "reading_tests"
	id = Column(String(32), primary_key=True, default=_new_id)
	title = Column(String(256), nullable=False)
	description = Column(Text, nullable=True)
	difficulty = Column(String(16), default="intermediate", nullable=False)
	status = Column(String(16), default="draft", nullable=False)
	created_by = Column(String(128), nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ReadingPassage(Base):
	__tablename__ = "reading_passages"
	__table_args__ = (UniqueConstraint("test_id", "passage_number", name="uq_reading_passage_number"),)
	id = Column(String(32), primary_key=True, default=_new_id)
	test_id = Column(String(32), ForeignKey("reading_tests.id"), nullable=False, index=True)
	passage_number = Column(Integer, nullable=False)
	title = Column(String(256), nullable=False)
	text = Column(Text, nullable=False)
	instructions = Column(Text, nullable=False, default="Read the passage and answer the questions.")
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
