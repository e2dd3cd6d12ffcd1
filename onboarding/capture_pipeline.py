"""
Capture & Validation Pipeline - identity document, selfie and supporting files.

Owns every captured file plus the document validation result and selfie
face-detection state. Other components read this state; only the methods
below change it.

Document side lifecycle: empty -> captured -> validating -> validated | failed
Selfie lifecycle:        idle -> detecting -> success | failed
"""

import logging
from typing import Optional

from config.settings import settings
from config.countries import get_country_name
from config.document_schema import (
    DOCUMENT_TYPES,
    DocumentCapture,
    DocumentSide,
    DocumentType,
    ExpectedPersonalData,
    FaceDetectionStatus,
    PersonalInfo,
    SideState,
    UploadedFile,
    ValidationError,
    ValidationResult,
)
from backend.image_processor import (
    ImageProcessingError,
    build_preview,
    capture_filename,
    data_url_to_file,
    rotate_preview,
    validate_capture_file,
)
from backend.ocr_service import GeminiDocumentOracle, GeminiOCR
from backend.face_detection import GeminiFaceDetector


logger = logging.getLogger(__name__)


VALIDATION_ERROR = "VALIDATION_ERROR"
RETRY_LIMIT_REACHED = "RETRY_LIMIT_REACHED"
MISSING_DATA = "MISSING_DATA"
NO_FACE_DETECTED = "NO_FACE_DETECTED"

DEFAULT_FACE_CONFIDENCE = 0.85


def to_validation_error(error: ImageProcessingError) -> ValidationError:
    return ValidationError(
        code=error.code,
        message=error.message,
        recoverable=error.recoverable,
        suggestion=error.suggestion,
    )


class CapturePipeline:
    """
    Document capture, validation with a bounded retry counter, and the
    independent selfie path.

    document_oracle: object with async validate(front, back, expected, document_type)
    face_detector:   object with async detect(selfie) -> FaceDetectionResult
    """

    def __init__(
        self,
        document_oracle=None,
        face_detector=None,
        max_retries: Optional[int] = None,
        max_file_size: Optional[int] = None,
        fallback_face_score: Optional[int] = None,
    ):
        self.document_oracle = document_oracle
        self.face_detector = face_detector
        self.max_retries = max_retries if max_retries is not None else settings.MAX_VALIDATION_RETRIES
        self.max_file_size = max_file_size or settings.max_file_size_bytes
        self.fallback_face_score = (
            fallback_face_score if fallback_face_score is not None else settings.FALLBACK_FACE_SCORE
        )

        self.document_type = DocumentType.NATIONAL_ID
        self.reset()

    @classmethod
    def from_settings(cls, api_key: Optional[str] = None) -> "CapturePipeline":
        """
        Pipeline wired to the Gemini oracles when an API key is configured.
        Without a key both oracles are left out and the local fallbacks apply.
        """
        api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        if not api_key or api_key == "your_gemini_api_key_here":
            logger.info("[Capture] GEMINI_API_KEY not set, using local document and face fallbacks")
            return cls()

        ocr = GeminiOCR(api_key=api_key)
        return cls(document_oracle=GeminiDocumentOracle(ocr), face_detector=GeminiFaceDetector(ocr))

    def reset(self) -> None:
        """Clear every capture, result and counter."""
        self.capture = DocumentCapture()
        self.side_states = {DocumentSide.FRONT: SideState.EMPTY, DocumentSide.BACK: SideState.EMPTY}
        self.validation_result: Optional[ValidationResult] = None
        self.validation_error: Optional[ValidationError] = None
        self.capture_error: Optional[ValidationError] = None
        self.retry_count = 0
        self.is_validating = False
        self._capture_version = 0

        self.selfie: Optional[UploadedFile] = None
        self.selfie_preview: Optional[str] = None
        self.face_status = FaceDetectionStatus.IDLE
        self.face_score = 0
        self.face_detection_degraded = False
        self.selfie_error: Optional[ValidationError] = None
        self._selfie_version = 0

        self.address_proof: Optional[UploadedFile] = None
        self.accredited_proof: Optional[UploadedFile] = None

    # ------------------------------------------------------------------
    # Document capture
    # ------------------------------------------------------------------

    @property
    def requires_back(self) -> bool:
        return DOCUMENT_TYPES[self.document_type].requires_back

    def _invalidate_result(self) -> None:
        """Images changed: drop the result and restart the retry budget."""
        self.validation_result = None
        self.validation_error = None
        self.retry_count = 0
        self._capture_version += 1
        for side in DocumentSide:
            has_file = self.capture.file_for(side) is not None
            self.side_states[side] = SideState.CAPTURED if has_file else SideState.EMPTY

    def _check_file(self, file: UploadedFile, allow_pdf: bool = True) -> str:
        """Run capture checks and decode the preview; records and re-raises failures."""
        try:
            validate_capture_file(file, self.max_file_size, allow_pdf=allow_pdf)
            preview = build_preview(file)
        except ImageProcessingError as e:
            self.capture_error = to_validation_error(e)
            logger.info(f"[Capture] Rejected {file.filename}: {e.code}")
            raise
        self.capture_error = None
        return preview

    def capture_side(self, side: DocumentSide, file: UploadedFile) -> None:
        """
        Store a capture for one side.

        Raises:
            FileTooLarge, InvalidFileType, ImageProcessingError
        """
        preview = self._check_file(file)
        self.capture = self.capture.with_side(side, file, preview)
        self._invalidate_result()
        logger.debug(f"[Capture] {side.value} captured ({file.size} bytes)")

    def capture_front(self, file: UploadedFile) -> None:
        self.capture_side(DocumentSide.FRONT, file)

    def capture_back(self, file: UploadedFile) -> None:
        self.capture_side(DocumentSide.BACK, file)

    def remove(self, side: DocumentSide) -> None:
        self.capture = self.capture.with_side(side, None, None)
        self._invalidate_result()

    def rotate(self, side: DocumentSide, degrees: int = 90) -> None:
        """Rotate a capture clockwise, replacing both file and preview."""
        preview = self.capture.preview_for(side)
        if preview is None:
            raise ImageProcessingError(f"No {side.value} capture to rotate")

        rotated = rotate_preview(preview, degrees)
        file = data_url_to_file(rotated, capture_filename(f"document_{side.value}"))
        self.capture = self.capture.with_side(side, file, rotated)
        self._invalidate_result()

    def change_document_type(self, document_type: DocumentType) -> None:
        """Switch document type; prior captures are meaningless for the new type."""
        self.document_type = DocumentType(document_type)
        self.capture = DocumentCapture()
        self.capture_error = None
        self._invalidate_result()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def has_required_captures(self) -> bool:
        if self.capture.front is None:
            return False
        return not self.requires_back or self.capture.back is not None

    def can_validate(self, personal: PersonalInfo) -> bool:
        return (
            len(personal.full_name.strip()) >= 2
            and personal.date_of_birth is not None
            and bool(personal.country_code)
            and self.has_required_captures()
        )

    @property
    def retry_limit_reached(self) -> bool:
        return self.retry_count >= self.max_retries

    @property
    def can_retry(self) -> bool:
        error_terminal = self.validation_error is not None and not self.validation_error.recoverable
        return not self.retry_limit_reached and not error_terminal

    def _terminal_error(self) -> ValidationError:
        return ValidationError(
            code=RETRY_LIMIT_REACHED,
            message=f"Document validation failed after {self.max_retries} attempts",
            recoverable=False,
            suggestion="Please recapture your document with better lighting and try again",
        )

    def _set_side_states(self, state: SideState) -> None:
        for side in DocumentSide:
            if self.capture.file_for(side) is not None:
                self.side_states[side] = state

    def expected_data(self, personal: PersonalInfo, country_name: Optional[str] = None) -> ExpectedPersonalData:
        return ExpectedPersonalData(
            full_name=personal.full_name.strip(),
            date_of_birth=personal.date_of_birth.isoformat() if personal.date_of_birth else "",
            country=country_name or get_country_name(personal.country_code) or "",
            document_number=personal.document_number or None,
            expiry_date=personal.expiry_date.isoformat() if personal.expiry_date else None,
        )

    async def validate(self, personal: PersonalInfo, country_name: Optional[str] = None) -> Optional[ValidationResult]:
        """
        Run the extraction/matching oracle against the entered personal data.

        Returns the stored ValidationResult, or None when the call was refused,
        failed or its result went stale because the captures changed meanwhile.
        """
        if self.is_validating:
            return None

        if not self.can_validate(personal):
            self.validation_error = ValidationError(
                code=MISSING_DATA,
                message="Personal details and document captures are incomplete",
                suggestion="Enter your full name, date of birth and country, and capture every required side",
            )
            return None

        if self.retry_limit_reached:
            self.validation_error = self._terminal_error()
            logger.info("[Capture] Retry limit reached, not calling the document oracle")
            return None

        if self.document_oracle is None:
            self.validation_error = ValidationError(
                code=VALIDATION_ERROR,
                message="Document validation is unavailable",
                suggestion="You can still submit; your document will be reviewed manually",
            )
            return None

        version = self._capture_version
        self.retry_count += 1
        self.is_validating = True
        self.validation_error = None
        self._set_side_states(SideState.VALIDATING)
        logger.info(f"[Capture] Validation attempt {self.retry_count}/{self.max_retries}")

        try:
            result = await self.document_oracle.validate(
                self.capture.front,
                self.capture.back if self.requires_back else None,
                self.expected_data(personal, country_name),
                self.document_type,
            )
        except Exception as e:
            if version != self._capture_version:
                return None
            logger.warning(f"[Capture] Document oracle failed: {e}")
            self._set_side_states(SideState.FAILED)
            if self.retry_limit_reached:
                self.validation_error = self._terminal_error()
            else:
                self.validation_error = ValidationError(
                    code=VALIDATION_ERROR,
                    message=f"Document validation failed: {e}",
                    suggestion="Please check your captures and retry",
                )
            return None
        finally:
            self.is_validating = False

        if version != self._capture_version:
            logger.debug("[Capture] Discarding stale validation result")
            return None

        self.validation_result = result
        self._set_side_states(SideState.VALIDATED if result.is_valid else SideState.FAILED)
        if not result.is_valid and self.retry_limit_reached:
            self.validation_error = self._terminal_error()
        return result

    async def retry_validation(self, personal: PersonalInfo, country_name: Optional[str] = None) -> Optional[ValidationResult]:
        """Re-run validation; refused without an oracle call once the retry budget is spent."""
        return await self.validate(personal, country_name)

    # ------------------------------------------------------------------
    # Selfie
    # ------------------------------------------------------------------

    def _selfie_fallback(self, reason: str) -> None:
        logger.warning(f"[Capture] Face detection unavailable ({reason}), using fallback score")
        self.face_score = self.fallback_face_score
        self.face_status = FaceDetectionStatus.SUCCESS
        self.face_detection_degraded = True

    async def upload_selfie(self, file: UploadedFile) -> FaceDetectionStatus:
        """
        Store a selfie and run face detection.
        Detector unavailability degrades to the fallback score instead of blocking.
        """
        try:
            validate_capture_file(file, self.max_file_size, allow_pdf=False)
            preview = build_preview(file)
        except ImageProcessingError as e:
            self.selfie_error = to_validation_error(e)
            raise

        self._selfie_version += 1
        version = self._selfie_version
        self.selfie = file
        self.selfie_preview = preview
        self.selfie_error = None
        self.face_detection_degraded = False
        self.face_score = 0
        self.face_status = FaceDetectionStatus.DETECTING

        if self.face_detector is None:
            self._selfie_fallback("no detector configured")
            return self.face_status

        try:
            result = await self.face_detector.detect(file)
        except Exception as e:
            if version == self._selfie_version:
                self._selfie_fallback(str(e))
            return self.face_status

        if version != self._selfie_version:
            return self.face_status

        if result.face_detected:
            confidence = result.confidence if result.confidence is not None else DEFAULT_FACE_CONFIDENCE
            self.face_score = round(confidence * 100)
            self.face_status = FaceDetectionStatus.SUCCESS
        else:
            self.face_status = FaceDetectionStatus.FAILED
            self.selfie_error = ValidationError(
                code=NO_FACE_DETECTED,
                message="No face detected in the photo",
                suggestion="Please take a clear, well-lit photo of your face",
            )
        logger.info(f"[Capture] Selfie face status={self.face_status.value} score={self.face_score}")
        return self.face_status

    def remove_selfie(self) -> None:
        self._selfie_version += 1
        self.selfie = None
        self.selfie_preview = None
        self.face_status = FaceDetectionStatus.IDLE
        self.face_score = 0
        self.face_detection_degraded = False
        self.selfie_error = None

    # ------------------------------------------------------------------
    # Supporting documents
    # ------------------------------------------------------------------

    def set_address_proof(self, file: Optional[UploadedFile]) -> None:
        if file is not None:
            self._check_file(file)
        self.address_proof = file

    def set_accredited_proof(self, file: Optional[UploadedFile]) -> None:
        if file is not None:
            self._check_file(file)
        self.accredited_proof = file
