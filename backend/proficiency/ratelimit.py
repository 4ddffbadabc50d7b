from __future__ import annotations
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

from fastapi import Depends, HTTPException

from .routers.auth import User, get_current_user
from .settings import settings


class SlidingWindowLimiter:
	"""In-process limiter: at most ``max_requests`` per ``window`` seconds per key."""

	def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
		self._clock = clock
		self._hits: Dict[str, Deque[float]] = defaultdict(deque)

	def hit(self, key: str, max_requests: int, window: float) -> bool:
		now = self._clock()
		hits = self._hits[key]
		while hits and now - hits[0] >= window:
			hits.popleft()
		if len(hits) >= max_requests:
			return False
		hits.append(now)
		return True

	def reset(self) -> None:
		self._hits.clear()


ai_limiter = SlidingWindowLimiter()


def check_ai_rate(user: User) -> None:
	if not ai_limiter.hit(user.username, settings.ai_rate_limit_max, settings.ai_rate_limit_window_seconds):
		raise HTTPException(status_code=429, detail="Too many AI requests, please try again later")


def ai_rate_limit(user: User = Depends(get_current_user)) -> User:
	check_ai_rate(user)
	return user
