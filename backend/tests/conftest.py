from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from proficiency import models
from proficiency.db import Base, get_db
from proficiency.gemini_client import GeminiError
from proficiency.main import app
from proficiency.ratelimit import ai_limiter
from proficiency.routers.ai import ExaminerSlot, get_examiner
from proficiency.routers.auth import User, get_current_user
from proficiency.settings import settings


class FakeExaminer:
	provider = "fake"

	def __init__(self) -> None:
		self.calls: List[str] = []
		self.fail = False
		self.band = 7.0
		# Runs while the model is "thinking", before the result comes back
		self.during_call: Optional[Callable[[], None]] = None

	def _check(self, name: str) -> None:
		self.calls.append(name)
		if self.during_call is not None:
			self.during_call()
		if self.fail:
			raise GeminiError("model unavailable")

	async def evaluate_writing(self, task_prompt: str, candidate_text: str) -> Dict[str, Any]:
		self._check("writing")
		return {
			"taskAchievement": self.band,
			"coherenceCohesion": self.band,
			"lexicalResource": self.band,
			"grammaticalRange": self.band,
			"overallWritingBand": self.band,
			"improvementTips": ["Vary sentence openings", "Check article use"],
			"justifications": {},
		}

	async def evaluate_speaking(self, transcript: str, audio_features: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
		self._check("speaking")
		return {
			"fluencyCoherence": self.band,
			"lexicalResource": self.band,
			"grammaticalRange": self.band,
			"pronunciation": self.band,
			"overallSpeakingBand": self.band,
			"improvementTips": ["Extend answers with examples"],
			"justifications": {},
		}

	async def generate_listening_questions(self, transcript: str, count: int = 5) -> List[Dict[str, Any]]:
		self._check("listening_questions")
		return [
			{
				"questionType": "multiple_choice",
				"content": {"question": "Where does the tour start?", "options": ["A) Gate", "B) Museum", "C) Park", "D) Harbour"]},
				"correctAnswers": ["B"],
				"orderIndex": 1,
			},
			{
				"questionType": "fill_blank",
				"content": {"question": "The tour lasts ___ hours."},
				"correctAnswers": ["two"],
				"orderIndex": 2,
			},
		][:count]

	async def generate_listening_content(self) -> Dict[str, Any]:
		self._check("listening_content")
		return {"sections": [{"title": "Booking a room", "transcript": "...", "questions": []}]}

	async def generate_speaking_prompt(self, part: int, topic: Optional[str] = None, last_response: Optional[str] = None) -> Dict[str, Any]:
		self._check("speaking_prompt")
		return {"prompt": f"Part {part}: tell me about {topic or 'your hometown'}.", "variations": ["easier", "harder"]}

	async def health(self) -> bool:
		self._check("health")
		return True


class AuthAs:
	def __init__(self) -> None:
		self.user = User(username="alice", role="student")

	def student(self, username: str = "alice") -> User:
		self.user = User(username=username, role="student")
		return self.user

	def admin(self, username: str = "admin") -> User:
		self.user = User(username=username, role="admin")
		return self.user


@pytest.fixture
def engine():
	engine = create_engine(
		"sqlite://",
		connect_args={"check_same_thread": False},
		poolclass=StaticPool,
	)
	Base.metadata.create_all(bind=engine)
	yield engine
	Base.metadata.drop_all(bind=engine)
	engine.dispose()


@pytest.fixture
def SessionLocal(engine):
	return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(SessionLocal):
	session = SessionLocal()
	yield session
	session.close()


@pytest.fixture
def auth() -> AuthAs:
	return AuthAs()


@pytest.fixture
def examiner() -> FakeExaminer:
	return FakeExaminer()


@pytest.fixture
def client(SessionLocal, auth, examiner, tmp_path, monkeypatch):
	def _get_db():
		session = SessionLocal()
		try:
			yield session
		finally:
			session.close()

	monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "uploads"))
	ai_limiter.reset()
	app.dependency_overrides[get_db] = _get_db
	app.dependency_overrides[get_current_user] = lambda: auth.user
	app.dependency_overrides[get_examiner] = lambda: ExaminerSlot(examiner)
	yield TestClient(app)
	app.dependency_overrides.clear()
	ai_limiter.reset()


def start_session(client: TestClient) -> Dict[str, Any]:
	res = client.post("/api/sessions", json={"testType": "academic"})
	assert res.status_code == 200, res.text
	return res.json()


def advance_to(client: TestClient, session_id: str, section: str) -> Dict[str, Any]:
	order = ["listening", "reading", "writing", "speaking", "completed"]
	session = client.get(f"/api/sessions/{session_id}").json()
	while session["currentSection"] != section:
		res = client.post(f"/api/sessions/{session_id}/advance", json={"fromSection": session["currentSection"]})
		assert res.status_code == 200, res.text
		session = res.json()["session"]
		assert order.index(session["currentSection"]) <= order.index(section)
	return session


def add_question(db, section: str, correct: List[str], **fields: Any) -> models.TestQuestion:
	q = models.TestQuestion(
		section=section,
		question_type=fields.pop("question_type", "short_answer"),
		content=fields.pop("content", {"question": "?"}),
		correct_answers=correct,
		**fields,
	)
	db.add(q)
	db.commit()
	db.refresh(q)
	return q
