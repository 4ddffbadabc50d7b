from __future__ import annotations
import math
from typing import Dict, List, Optional, Tuple

# (min raw score, max raw score, band) for a 40-question paper
LISTENING_BAND_TABLE: List[Tuple[int, int, float]] = [
	(39, 40, 9.0),
	(37, 38, 8.5),
	(35, 36, 8.0),
	(33, 34, 7.5),
	(30, 32, 7.0),
	(27, 29, 6.5),
	(23, 26, 6.0),
	(20, 22, 5.5),
	(16, 19, 5.0),
	(13, 15, 4.5),
	(10, 12, 4.0),
	(7, 9, 3.5),
	(5, 6, 3.0),
	(3, 4, 2.5),
	(1, 2, 1.0),
	(0, 0, 0.0),
]

# Same conversion for reading until an academic/general split is needed
READING_BAND_TABLE: List[Tuple[int, int, float]] = list(LISTENING_BAND_TABLE)

BAND_DESCRIPTORS: Dict[float, str] = {
	9.0: "Expert User",
	8.5: "Very Good User",
	8.0: "Very Good User",
	7.5: "Good User",
	7.0: "Good User",
	6.5: "Competent User",
	6.0: "Competent User",
	5.5: "Modest User",
	5.0: "Modest User",
	4.5: "Limited User",
	4.0: "Limited User",
	3.5: "Extremely Limited User",
	3.0: "Extremely Limited User",
	2.5: "Intermittent User",
	2.0: "Intermittent User",
	1.0: "Non User",
	0.0: "Did not attempt",
}


def raw_score_to_band(raw_score: int, section: str) -> float:
	if section == "listening":
		table = LISTENING_BAND_TABLE
	elif section == "reading":
		table = READING_BAND_TABLE
	else:
		raise ValueError(f"no raw score table for section {section!r}")
	for low, high, band in table:
		if low <= raw_score <= high:
			return band
	return 0.0


def round_band(value: float) -> float:
	"""IELTS rounding: .25 goes up to .5, .75 goes up to the next whole band."""
	whole = math.floor(value)
	fraction = value - whole
	if fraction >= 0.75:
		return float(whole + 1)
	if fraction >= 0.25:
		return whole + 0.5
	return float(whole)


def clamp_band(value: float) -> float:
	return max(0.0, min(9.0, value))


def nearest_half(value: float) -> float:
	return clamp_band(round(value * 2) / 2)


def calculate_overall_band(listening: float, reading: float, writing: float, speaking: float) -> float:
	return round_band((listening + reading + writing + speaking) / 4)


def band_descriptor(band: Optional[float]) -> str:
	if band is None:
		return "Unknown"
	return BAND_DESCRIPTORS.get(float(band), "Unknown")
