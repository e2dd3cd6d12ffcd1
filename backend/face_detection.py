"""
Face Detection - selfie face-presence oracle backed by Gemini Vision.
"""

import json
import logging
from typing import Optional

from config.document_schema import FaceDetectionResult, UploadedFile
from backend.image_processor import prepare_for_ocr
from backend.ocr_service import GeminiOCR, OCRUnavailableError


logger = logging.getLogger(__name__)


FACE_PROMPT = """Look at this selfie photo and count the human faces in it.
Respond with JSON only, in this exact shape:
{"face_detected": true, "face_count": 1, "confidence": 0.95}
confidence is how sure you are (0.0 - 1.0) that exactly one real, unobstructed face is visible."""


class FaceDetectionUnavailable(Exception):
    """Raised when the detector cannot produce a verdict."""
    pass


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_face_response(text: str) -> FaceDetectionResult:
    """
    Parse the model's JSON answer.

    Raises:
        FaceDetectionUnavailable: answer is not the expected JSON
    """
    try:
        payload = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise FaceDetectionUnavailable(f"Unparseable detector response: {e}")

    if not isinstance(payload, dict) or "face_detected" not in payload:
        raise FaceDetectionUnavailable("Detector response missing face_detected")

    confidence = payload.get("confidence")
    if confidence is not None:
        confidence = max(0.0, min(1.0, float(confidence)))

    return FaceDetectionResult(
        face_detected=bool(payload["face_detected"]),
        confidence=confidence,
        face_count=int(payload.get("face_count") or 0),
    )


class GeminiFaceDetector:
    """Face-presence oracle for selfie uploads."""

    def __init__(self, ocr: Optional[GeminiOCR] = None):
        self.ocr = ocr or GeminiOCR()

    async def detect(self, selfie: UploadedFile) -> FaceDetectionResult:
        if not self.ocr.is_configured():
            raise FaceDetectionUnavailable("GEMINI_API_KEY is not configured")

        data, mime_type = prepare_for_ocr(selfie.data, selfie.content_type)
        try:
            answer = await self.ocr.generate(FACE_PROMPT, data, mime_type)
        except OCRUnavailableError as e:
            raise FaceDetectionUnavailable(str(e))

        result = parse_face_response(answer)
        logger.info(
            f"[Face Detection] detected={result.face_detected} "
            f"count={result.face_count} confidence={result.confidence}"
        )
        return result
