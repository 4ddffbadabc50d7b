from __future__ import annotations
import json
import logging
import re
import httpx
from typing import Any, Dict, Optional
from .settings import settings

logger = logging.getLogger(__name__)


class GeminiError(RuntimeError):
	"""The model could not be reached or returned something unusable."""


def extract_json(text: str) -> Any:
	"""Parse JSON out of model output that may be wrapped in fences or prose."""
	try:
		return json.loads(text)
	except (TypeError, ValueError):
		pass
	code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text or "")
	if code_block:
		try:
			return json.loads(code_block.group(1))
		except ValueError:
			pass
	for opener, closer in (("{", "}"), ("[", "]")):
		first = (text or "").find(opener)
		last = (text or "").rfind(closer)
		if first != -1 and last > first:
			try:
				return json.loads(text[first : last + 1])
			except ValueError:
				continue
	raise GeminiError("Model did not return valid JSON")


class GeminiClient:
	def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise GeminiError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		self.provider = settings.gemini_provider
		if self.provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			# Google AI Studio (Generative Language API)
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		self._client = httpx.AsyncClient(timeout=60)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._openrouter_api_key:
			self._fallback_client = httpx.AsyncClient(timeout=60)

	async def generate(
		self,
		prompt: str,
		*,
		json_output: bool = False,
		max_output_tokens: Optional[int] = None,
		temperature: Optional[float] = None,
	) -> str:
		generation_config: Dict[str, Any] = {}
		if json_output:
			generation_config["responseMimeType"] = "application/json"
		if max_output_tokens is not None:
			generation_config["maxOutputTokens"] = max_output_tokens
		if temperature is not None:
			generation_config["temperature"] = temperature
		payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
		if generation_config:
			payload["generationConfig"] = generation_config
		try:
			return await self._post_payload(payload)
		except GeminiError as primary_error:
			if self._fallback_client is None:
				raise
			logger.warning("Gemini call failed (%s); falling back to OpenRouter", primary_error)
			return await self._fallback_generate(prompt, primary_error)

	async def generate_json(self, prompt: str, **kwargs: Any) -> Any:
		return extract_json(await self.generate(prompt, json_output=True, **kwargs))

	async def _post_payload(self, payload: Dict[str, Any]) -> str:
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		try:
			r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			raise GeminiError(f"Gemini returned HTTP {http_err.response.status_code}") from http_err
		except httpx.RequestError as net_err:
			raise GeminiError(f"Gemini request failed: {net_err}") from net_err
		try:
			data = r.json()
			return data["candidates"][0]["content"]["parts"][0]["text"]
		except (ValueError, KeyError, IndexError, TypeError):
			raise GeminiError(f"Unexpected Gemini response: {r.text[:500]}") from None

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_generate(self, prompt: str, primary_error: Exception) -> str:
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		payload: Dict[str, Any] = {
			"model": settings.openrouter_model,
			"messages": [{"role": "user", "content": prompt}],
		}
		try:
			r = await self._fallback_client.post(settings.openrouter_base_url, headers=headers, json=payload)
			r.raise_for_status()
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as fallback_err:
			raise GeminiError(
				f"Gemini primary call failed ({primary_error}); fallback via OpenRouter also failed"
			) from fallback_err
