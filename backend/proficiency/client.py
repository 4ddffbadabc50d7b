"""Async client the test pages use to drive a session."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, Mapping, Optional, Tuple, TypeVar

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .progression import Progress, Section, TransitionError, advance, can_enter, parse_section, redirect_for, route_for
from .settings import settings
from .utils import min_words_for, validate_word_count, word_count_message

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KEY_NAMESPACE = uuid.UUID("6f1c2a3e-9b7d-4c55-8e0a-2d4f6b8c1a90")


@dataclass(frozen=True)
class RequestResult(Generic[T]):
	ok: bool
	value: Optional[T] = None
	error: Optional[str] = None
	status_code: Optional[int] = None

	@classmethod
	def success(cls, value: T, status_code: Optional[int] = None) -> "RequestResult[T]":
		return cls(ok=True, value=value, status_code=status_code)

	@classmethod
	def failure(cls, error: str, status_code: Optional[int] = None) -> "RequestResult[T]":
		return cls(ok=False, error=error, status_code=status_code)


class _ServerError(Exception):
	def __init__(self, response: httpx.Response) -> None:
		super().__init__(f"server returned {response.status_code}")
		self.response = response


def _error_message(response: httpx.Response) -> str:
	try:
		body = response.json()
	except ValueError:
		return response.text or f"HTTP {response.status_code}"
	if isinstance(body, dict):
		detail = body.get("detail") or body.get("error")
		if isinstance(detail, list):
			return "; ".join(str(d.get("msg", d)) if isinstance(d, dict) else str(d) for d in detail)
		if detail:
			return str(detail)
	return f"HTTP {response.status_code}"


def idempotency_key(kind: str, session_id: str, section: str, question_id: str) -> str:
	"""Same submission, same key: derived only from what identifies the record."""
	return uuid.uuid5(_KEY_NAMESPACE, f"{kind}:{session_id}:{section}:{question_id}").hex


class ApiClient:
	def __init__(
		self,
		base_url: Optional[str] = None,
		token: Optional[str] = None,
		*,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		max_attempts: Optional[int] = None,
		backoff_seconds: Optional[float] = None,
		timeout: Optional[float] = None,
	) -> None:
		self.max_attempts = max_attempts or settings.client_max_attempts
		self.backoff_seconds = settings.client_backoff_seconds if backoff_seconds is None else backoff_seconds
		headers = {"Authorization": f"Bearer {token}"} if token else {}
		self._http = httpx.AsyncClient(
			base_url=base_url or settings.api_base_url,
			headers=headers,
			transport=transport,
			timeout=timeout or settings.client_timeout_seconds,
		)

	async def __aenter__(self) -> "ApiClient":
		return self

	async def __aexit__(self, *exc: Any) -> None:
		await self.aclose()

	async def aclose(self) -> None:
		await self._http.aclose()

	async def login(self, username: str, password: str) -> RequestResult[Dict[str, Any]]:
		result = await self.request("POST", "/auth/token", data={"username": username, "password": password})
		if result.ok:
			self._http.headers["Authorization"] = f"Bearer {result.value['access_token']}"
		return result

	async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
		response = await self._http.request(method, path, **kwargs)
		if response.status_code >= 500:
			raise _ServerError(response)
		return response

	async def request(self, method: str, path: str, *, idempotent: bool = False, **kwargs: Any) -> RequestResult[Any]:
		"""Send one request. GETs and ``idempotent`` requests are retried with backoff
		on transport errors and 5xx responses; everything else is tried once."""
		retryable = idempotent or method.upper() == "GET"
		retrying = AsyncRetrying(
			stop=stop_after_attempt(self.max_attempts if retryable else 1),
			wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
			retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
			before_sleep=lambda state: logger.warning(
				"Retrying %s %s (attempt %d/%d): %s",
				method, path, state.attempt_number, self.max_attempts, state.outcome.exception(),
			),
			reraise=True,
		)
		try:
			response = await retrying(self._send, method, path, **kwargs)
		except _ServerError as e:
			return RequestResult.failure(_error_message(e.response), e.response.status_code)
		except httpx.TransportError as e:
			logger.warning("%s %s failed: %s", method, path, e)
			return RequestResult.failure(f"Network error: {e}")
		if response.status_code >= 400:
			return RequestResult.failure(_error_message(response), response.status_code)
		value = response.json() if response.content else None
		return RequestResult.success(value, response.status_code)


def _apply_progress(snapshot: Mapping[str, Any], progress: Progress) -> Dict[str, Any]:
	updated = dict(snapshot)
	updated["currentSection"] = progress.current.value
	updated["status"] = progress.status
	for section in progress.completed:
		updated[f"{section.value}Completed"] = True
	return updated


class SessionContext:
	"""Holds one candidate session; the only code that changes it on the client."""

	def __init__(self, api: ApiClient, snapshot: Mapping[str, Any]) -> None:
		self.api = api
		self._snapshot: Dict[str, Any] = dict(snapshot)
		self._lock = asyncio.Lock()

	@classmethod
	async def start(cls, api: ApiClient, test_type: str = "academic") -> RequestResult["SessionContext"]:
		result = await api.request("POST", "/api/sessions", json={"testType": test_type})
		if not result.ok:
			return RequestResult.failure(result.error or "Could not start test", result.status_code)
		return RequestResult.success(cls(api, result.value), result.status_code)

	@classmethod
	async def load(cls, api: ApiClient, session_id: str) -> RequestResult["SessionContext"]:
		result = await api.request("GET", f"/api/sessions/{session_id}")
		if not result.ok:
			return RequestResult.failure(result.error or "Could not load session", result.status_code)
		return RequestResult.success(cls(api, result.value), result.status_code)

	@property
	def session(self) -> Dict[str, Any]:
		return dict(self._snapshot)

	@property
	def session_id(self) -> str:
		return self._snapshot["id"]

	@property
	def progress(self) -> Progress:
		return Progress.from_snapshot(self._snapshot)

	def can_enter(self, section: Any) -> bool:
		return can_enter(parse_section(section), self.progress)

	def redirect_for(self, section: Any) -> Optional[str]:
		"""Route a page for ``section`` must send the candidate to, or None to stay."""
		return redirect_for(parse_section(section), self.progress, self.session_id)

	async def refresh(self) -> RequestResult[Dict[str, Any]]:
		async with self._lock:
			result = await self.api.request("GET", f"/api/sessions/{self.session_id}")
			if result.ok:
				self._snapshot = dict(result.value)
			return result

	async def complete_section(self, section: Any) -> RequestResult[str]:
		"""Complete ``section`` and return the route of the next page.

		The local snapshot moves forward before the request and is restored if
		the server refuses, so a failed call never navigates anywhere.
		"""
		target = parse_section(section)
		async with self._lock:
			before = dict(self._snapshot)
			progress = Progress.from_snapshot(before)
			if progress.current != target:
				if target in progress.completed:
					return RequestResult.success(route_for(progress.current, self.session_id))
				return RequestResult.failure(f"cannot complete {target.value} while the session is on {progress.current.value}")
			try:
				after = advance(progress)
			except TransitionError as e:
				return RequestResult.failure(str(e))
			self._snapshot = _apply_progress(before, after)
			result = await self.api.request(
				"POST",
				f"/api/sessions/{self.session_id}/advance",
				json={"fromSection": target.value},
				idempotent=True,
			)
			if not result.ok:
				logger.warning("Rolling back completion of %s on %s: %s", target.value, self.session_id, result.error)
				self._snapshot = before
				return RequestResult.failure(result.error or "Could not complete section", result.status_code)
			self._snapshot = dict(result.value["session"])
			return RequestResult.success(result.value["route"], result.status_code)


class SubmissionPipeline:
	def __init__(self, context: SessionContext, autosave_delay: Optional[float] = None) -> None:
		self.context = context
		self.autosave_delay = settings.client_autosave_seconds if autosave_delay is None else autosave_delay
		self._inflight: Dict[str, "asyncio.Task[RequestResult[Any]]"] = {}
		# Latest unsubmitted value per question; a final submission clears it
		self._drafts: Dict[Tuple[Section, str], Any] = {}
		self._autosaves: Dict[Tuple[Section, str], "asyncio.Task[RequestResult[Any]]"] = {}

	@property
	def api(self) -> ApiClient:
		return self.context.api

	async def _once(self, key: str, send: Callable[[], Awaitable[RequestResult[Any]]]) -> RequestResult[Any]:
		task = self._inflight.get(key)
		if task is None:
			task = asyncio.ensure_future(send())
			self._inflight[key] = task
			task.add_done_callback(lambda _t: self._inflight.pop(key, None))
		else:
			logger.info("Joining in-flight submission %s", key)
		return await task

	def _closed(self, section: Section) -> Optional[RequestResult[Any]]:
		if self.context.can_enter(section):
			return None
		current = self.context.progress.current.value
		return RequestResult.failure(f"Answers for {section.value} are closed; session is on {current}")

	# ------------------------------------------------------------------
	# Auto-save
	# ------------------------------------------------------------------

	def autosave(self, section: Any, question_id: str, answer: Any) -> None:
		"""Remember an edit and save it as a draft once edits pause.

		Call from the event loop. Every edit restarts the timer, so only the
		latest value reaches the server.
		"""
		key = (parse_section(section), question_id)
		self._drafts[key] = answer
		self._cancel_autosave(key)
		task = asyncio.ensure_future(self._save_draft_later(key))
		self._autosaves[key] = task
		task.add_done_callback(lambda t: self._forget_autosave(key, t))

	def _forget_autosave(self, key: Tuple[Section, str], task: "asyncio.Task[RequestResult[Any]]") -> None:
		if self._autosaves.get(key) is task:
			del self._autosaves[key]

	def _cancel_autosave(self, key: Tuple[Section, str]) -> None:
		pending = self._autosaves.pop(key, None)
		if pending is not None and not pending.done():
			pending.cancel()

	async def _save_draft_later(self, key: Tuple[Section, str]) -> RequestResult[Any]:
		await asyncio.sleep(self.autosave_delay)
		section, question_id = key
		closed = self._closed(section)
		if closed is not None:
			return closed
		body = {
			"sessionId": self.context.session_id,
			"questionId": question_id,
			"section": section.value,
			"answer": self._drafts.get(key),
		}
		result = await self.api.request("PUT", "/api/test/draft", json=body, idempotent=True)
		if not result.ok:
			logger.warning("Draft save for %s on %s failed: %s", question_id, self.context.session_id, result.error)
		return result

	async def flush_autosaves(self) -> None:
		"""Wait for every scheduled draft save."""
		pending = list(self._autosaves.values())
		if pending:
			await asyncio.gather(*pending)

	def latest_draft(self, section: Any, question_id: str) -> Any:
		return self._drafts.get((parse_section(section), question_id))

	# ------------------------------------------------------------------
	# Final submissions
	# ------------------------------------------------------------------

	def _record(self, section: Section, question_id: str, answer: Any, time_spent: int) -> Dict[str, Any]:
		return {
			"sessionId": self.context.session_id,
			"questionId": question_id,
			"section": section.value,
			"answer": answer,
			"timeSpent": time_spent,
			"idempotencyKey": idempotency_key("answer", self.context.session_id, section.value, question_id),
		}

	async def submit_answer(self, section: Any, question_id: str, answer: Any, time_spent: int = 0) -> RequestResult[Dict[str, Any]]:
		section = parse_section(section)
		closed = self._closed(section)
		if closed is not None:
			return closed
		self._cancel_autosave((section, question_id))
		record = self._record(section, question_id, answer, time_spent)
		result = await self._once(
			record["idempotencyKey"],
			lambda: self.api.request("POST", "/api/test/submit-answer", json=record, idempotent=True),
		)
		if result.ok:
			self._drafts.pop((section, question_id), None)
		return result

	async def submit_answers(self, section: Any, answers: Iterable[Tuple[str, Any]], time_spent: int = 0) -> RequestResult[Dict[str, Any]]:
		"""Submit a page of ``(question_id, answer)`` pairs in one request."""
		section = parse_section(section)
		closed = self._closed(section)
		if closed is not None:
			return closed
		answers = list(answers)
		records = [self._record(section, qid, answer, time_spent) for qid, answer in answers]
		if not records:
			return RequestResult.failure("No answers to submit")
		for qid, _ in answers:
			self._cancel_autosave((section, qid))
		key = "batch:" + ",".join(sorted(r["idempotencyKey"] for r in records))
		result = await self._once(
			key,
			lambda: self.api.request("POST", "/api/test/submit-answers", json={"answers": records}, idempotent=True),
		)
		if result.ok:
			for qid, _ in answers:
				self._drafts.pop((section, qid), None)
		return result

	async def submit_drafts(self, section: Any, time_spent: int = 0) -> RequestResult[Dict[str, Any]]:
		"""Submit the latest auto-saved value of every question on a page."""
		section = parse_section(section)
		answers = [(qid, answer) for (s, qid), answer in self._drafts.items() if s == section]
		return await self.submit_answers(section, answers, time_spent)

	async def submit_writing(
		self,
		task: int,
		question_id: str,
		content: str,
		task_prompt: str = "",
		time_spent: int = 0,
	) -> RequestResult[Dict[str, Any]]:
		"""Store the essay, then ask for its evaluation.

		Content under the task minimum is refused here, before any request.
		"""
		try:
			check = validate_word_count(content, min_words_for(task))
		except ValueError as e:
			return RequestResult.failure(str(e))
		if not check.is_valid:
			return RequestResult.failure(word_count_message(task, check))

		stored = await self.submit_answer(Section.WRITING, question_id, content, time_spent)
		if not stored.ok:
			return stored
		key = idempotency_key("evaluation", self.context.session_id, Section.WRITING.value, question_id)
		body = {
			"sessionId": self.context.session_id,
			"questionId": question_id,
			"taskPrompt": task_prompt,
			"content": content,
			"task": task,
			"idempotencyKey": key,
		}
		return await self._once(key, lambda: self.api.request("POST", "/api/ai/evaluate/writing", json=body, idempotent=True))

	async def submit_speaking(
		self,
		question_id: str,
		transcript: str,
		audio_features: Optional[Dict[str, Any]] = None,
		time_spent: int = 0,
	) -> RequestResult[Dict[str, Any]]:
		if not transcript.strip():
			return RequestResult.failure("Nothing was recorded for this question")
		stored = await self.submit_answer(Section.SPEAKING, question_id, transcript, time_spent)
		if not stored.ok:
			return stored
		key = idempotency_key("evaluation", self.context.session_id, Section.SPEAKING.value, question_id)
		body = {
			"sessionId": self.context.session_id,
			"questionId": question_id,
			"transcript": transcript,
			"audioFeatures": audio_features,
			"idempotencyKey": key,
		}
		return await self._once(key, lambda: self.api.request("POST", "/api/ai/evaluate/speaking", json=body, idempotent=True))
