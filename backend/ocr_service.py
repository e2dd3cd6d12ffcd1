"""
Gemini OCR Service - document transcription through the Google Gemini API.

Provides:
- Plain-text OCR of document captures (front/back)
- Model fallback when a model is rate limited or unavailable
- GeminiDocumentOracle: OCR + field matching for the capture pipeline
"""

import re
import asyncio
import logging
from typing import Optional

from google import genai

from config.settings import settings
from config.document_schema import (
    DocumentType,
    ExpectedPersonalData,
    UploadedFile,
    ValidationResult,
)
from backend.image_processor import prepare_for_ocr
from backend.document_validator import validate_document_text


logger = logging.getLogger(__name__)


OCR_PROMPT = """Transcribe every piece of printed text on this identity document exactly as it appears.
Keep the original line breaks. Transcribe the machine readable zone (the lines made of
letters, digits and '<' characters) character for character, without spaces.
Return only the transcription, no commentary."""


class OCRUnavailableError(Exception):
    """Raised when no Gemini model could transcribe the document."""
    pass


class GeminiOCR:
    """
    Gemini Vision API wrapper for document OCR.
    Tries each model in GEMINI_MODELS until one answers.
    """

    # Gemini models to try (in order of preference)
    GEMINI_MODELS = [
        "gemini-2.5-flash",
        "gemini-2.5-pro",
        "gemini-2.0-flash",
    ]

    def __init__(self, api_key: Optional[str] = None, client=None):
        """Initialize with API key (or a pre-built genai client)."""
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self._client = client
        if self._client is None and self.api_key:
            self._client = genai.Client(api_key=self.api_key)

        self._call_count = 0
        self._last_error: Optional[str] = None

    @property
    def call_count(self) -> int:
        """Get number of successful API calls made."""
        return self._call_count

    def is_configured(self) -> bool:
        """Check if Gemini API is configured."""
        return self._client is not None

    async def generate(self, prompt: str, data: bytes, mime_type: str, max_retries: int = 2) -> str:
        """
        Send a prompt plus one inline file, falling back across models.

        Raises:
            OCRUnavailableError: not configured, or every model failed
        """
        if not self._client:
            raise OCRUnavailableError("GEMINI_API_KEY is not configured")

        for model_name in self.GEMINI_MODELS:
            for attempt in range(max_retries):
                try:
                    logger.debug(f"[Gemini OCR] Trying model: {model_name} (attempt {attempt + 1})")
                    response = await self._client.aio.models.generate_content(
                        model=model_name,
                        contents=[
                            genai.types.Part(text=prompt),
                            genai.types.Part(inline_data=genai.types.Blob(data=data, mime_type=mime_type)),
                        ],
                    )
                    self._call_count += 1
                    return response.text or ""

                except Exception as e:
                    error_str = str(e)
                    self._last_error = error_str

                    if "429" in error_str or "quota" in error_str.lower():
                        match = re.search(r"retry in (\d+\.?\d*)", error_str.lower())
                        if match and float(match.group(1)) < 10:
                            delay = float(match.group(1))
                            logger.warning(f"[Gemini OCR] Rate limited. Waiting {delay:.1f}s...")
                            await asyncio.sleep(delay + 1)
                            continue
                        # Different models have different quotas
                        logger.warning(f"[Gemini OCR] Quota exceeded for {model_name}, trying next model")
                        break

                    if "404" in error_str or "not found" in error_str.lower():
                        logger.warning(f"[Gemini OCR] Model {model_name} not found, trying next")
                        break

                    logger.warning(f"[Gemini OCR] Error: {error_str[:100]}")
                    if attempt < max_retries - 1:
                        await asyncio.sleep(1)

        raise OCRUnavailableError(self._last_error or "All Gemini models failed")

    async def transcribe(self, file: UploadedFile) -> str:
        """OCR a single capture into plain text."""
        data, mime_type = prepare_for_ocr(file.data, file.content_type)
        text = await self.generate(OCR_PROMPT, data, mime_type)
        logger.info(f"[Gemini OCR] {file.filename}: {len(text)} chars")
        return text


class GeminiDocumentOracle:
    """
    Extraction/matching oracle used by the capture pipeline.
    Transcribes every captured side and scores it against the expected data.
    """

    def __init__(self, ocr: Optional[GeminiOCR] = None):
        self.ocr = ocr or GeminiOCR()

    async def validate(
        self,
        front: UploadedFile,
        back: Optional[UploadedFile],
        expected: ExpectedPersonalData,
        document_type: DocumentType,
    ) -> ValidationResult:
        texts = [await self.ocr.transcribe(front)]
        if back is not None:
            texts.append(await self.ocr.transcribe(back))
        return validate_document_text("\n".join(texts), expected, document_type)
