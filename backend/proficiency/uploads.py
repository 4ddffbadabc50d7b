from __future__ import annotations
import logging
import os
import uuid
from pathlib import Path
from typing import Tuple

from fastapi import HTTPException, UploadFile

from .settings import settings

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


def public_url(subdir: str, filename: str) -> str:
	return f"/uploads/{subdir}/{filename}"


async def save_upload(upload: UploadFile, subdir: str, max_bytes: int) -> Tuple[str, int]:
	"""Stream an upload to ``<upload_dir>/<subdir>``. Returns ``(filename, size)``.

	Oversized uploads are removed and rejected with 413, empty ones with 400.
	"""
	target_dir = Path(settings.upload_dir) / subdir
	target_dir.mkdir(parents=True, exist_ok=True)
	ext = os.path.splitext(upload.filename or "")[1].lower()
	filename = f"{uuid.uuid4().hex}{ext}"
	path = target_dir / filename
	size = 0
	too_large = False
	with open(path, "wb") as fh:
		while True:
			chunk = await upload.read(_CHUNK)
			if not chunk:
				break
			size += len(chunk)
			if size > max_bytes:
				too_large = True
				break
			fh.write(chunk)
	if too_large:
		path.unlink(missing_ok=True)
		logger.warning("Rejected upload %s over %d bytes", upload.filename, max_bytes)
		raise HTTPException(status_code=413, detail=f"File exceeds the {max_bytes // (1024 * 1024)} MB limit")
	if size == 0:
		path.unlink(missing_ok=True)
		raise HTTPException(status_code=400, detail="Uploaded file is empty")
	return filename, size
