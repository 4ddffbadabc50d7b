from __future__ import annotations
import logging
from typing import Any, Dict

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import speech_v1p1beta1 as speech

from .settings import settings

logger = logging.getLogger(__name__)

# Browser recorders produce webm/opus; uploads may also be wav/ogg/mp3
_ENCODINGS = {
	"audio/webm": speech.RecognitionConfig.AudioEncoding.WEBM_OPUS,
	"audio/ogg": speech.RecognitionConfig.AudioEncoding.OGG_OPUS,
	"audio/wav": speech.RecognitionConfig.AudioEncoding.LINEAR16,
	"audio/x-wav": speech.RecognitionConfig.AudioEncoding.LINEAR16,
	"audio/mpeg": speech.RecognitionConfig.AudioEncoding.MP3,
	"audio/mp3": speech.RecognitionConfig.AudioEncoding.MP3,
}


class TranscriptionError(RuntimeError):
	pass


def transcribe(audio_content: bytes, mime_type: str) -> Dict[str, Any]:
	"""Transcribe a short recording with Google Cloud Speech-to-Text.

	Blocking; call it from a worker thread. Returns ``{"text", "confidence",
	"words"}``; confidence is the mean over recognized segments.
	"""
	if not audio_content:
		raise TranscriptionError("Empty audio payload received")
	try:
		client = speech.SpeechClient()
	except DefaultCredentialsError as e:
		raise TranscriptionError(f"Speech-to-Text unavailable: {e}") from e

	config = speech.RecognitionConfig(
		encoding=_ENCODINGS.get(mime_type, speech.RecognitionConfig.AudioEncoding.ENCODING_UNSPECIFIED),
		language_code=settings.speech_language_code,
		enable_word_time_offsets=True,
		enable_automatic_punctuation=True,
		profanity_filter=False,
		use_enhanced=True,
	)
	audio = speech.RecognitionAudio(content=audio_content)
	try:
		response = client.recognize(config=config, audio=audio)
	except GoogleAPIError as e:
		raise TranscriptionError(f"Speech-to-Text API error: {e}") from e

	texts = []
	confidences = []
	words = 0
	for result in response.results:
		if not result.alternatives:
			continue
		best = result.alternatives[0]
		texts.append(best.transcript.strip())
		confidences.append(best.confidence)
		words += len(best.words)
	text = " ".join(t for t in texts if t)
	confidence = sum(confidences) / len(confidences) if confidences else None
	logger.info("Transcribed %d bytes of %s into %d words", len(audio_content), mime_type, words)
	return {"text": text, "confidence": confidence, "words": words}
