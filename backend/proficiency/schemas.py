from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
	# JSON bodies use camelCase; Python code uses snake_case
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


SectionName = Literal["listening", "reading", "writing", "speaking"]
ProgressName = Literal["listening", "reading", "writing", "speaking", "completed"]


class SessionOut(CamelModel):
	id: str
	user_id: str
	test_type: str
	status: str
	current_section: ProgressName
	listening_completed: bool
	reading_completed: bool
	writing_completed: bool
	speaking_completed: bool
	start_time: datetime
	end_time: Optional[datetime] = None
	time_remaining: Optional[int] = None
	overall_band: Optional[float] = None
	listening_band: Optional[float] = None
	reading_band: Optional[float] = None
	writing_band: Optional[float] = None
	speaking_band: Optional[float] = None
	archived_at: Optional[datetime] = None


class AnswerRecord(CamelModel):
	session_id: str
	question_id: str = Field(min_length=1, max_length=64)
	answer: Any = None
	section: SectionName
	time_spent: int = Field(default=0, ge=0)
	idempotency_key: Optional[str] = Field(default=None, max_length=64)


class AnswerOut(CamelModel):
	id: str
	session_id: str
	question_id: str
	section: str
	answer: Any = None
	time_spent: int
	is_correct: Optional[bool] = None
	score: Optional[float] = None
	idempotency_key: Optional[str] = None
	submitted_at: datetime


class DraftRecord(CamelModel):
	session_id: str
	question_id: str = Field(min_length=1, max_length=64)
	answer: Any = None
	section: SectionName
	time_spent: int = Field(default=0, ge=0)


class DraftOut(CamelModel):
	session_id: str
	question_id: str
	section: str
	answer: Any = None
	time_spent: int
	saved_at: datetime


class SubmitAnswerResponse(CamelModel):
	answer: AnswerOut
	duplicate: bool = False


class SubmitAnswersRequest(CamelModel):
	answers: List[AnswerRecord] = Field(min_length=1, max_length=200)


class SubmitAnswersResponse(CamelModel):
	answers: List[AnswerOut]
	created: int
	duplicates: int


class EvaluationOut(CamelModel):
	id: str
	session_id: str
	section: str
	question_id: Optional[str] = None
	criteria: Dict[str, Any]
	feedback: str
	band_score: float
	ai_provider: str
	idempotency_key: Optional[str] = None
	evaluated_at: datetime


class EvaluationResponse(CamelModel):
	evaluation: EvaluationOut
	result: Dict[str, Any]
	duplicate: bool = False
