"""
Data model for the tiered KYC onboarding engine.
These models define the evidence captured from the user, the verdicts of the
verification oracles and the artifacts produced by a submission cycle.
"""

import time
from datetime import date
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field

from .tiers import EvidenceCategory


class DocumentType(str, Enum):
    """Types of identity documents accepted for KYC verification."""
    NATIONAL_ID = "national_id"
    PASSPORT = "passport"


class DocumentSide(str, Enum):
    """Which side of the document is being captured."""
    FRONT = "front"
    BACK = "back"


class DocumentTypeConfig(BaseModel):
    id: DocumentType
    label: str
    description: str
    requires_back: bool
    has_mrz: bool


DOCUMENT_TYPES: dict[DocumentType, DocumentTypeConfig] = {
    DocumentType.NATIONAL_ID: DocumentTypeConfig(
        id=DocumentType.NATIONAL_ID,
        label="National ID Card",
        description="Government-issued national identity card",
        requires_back=True,
        has_mrz=True,
    ),
    DocumentType.PASSPORT: DocumentTypeConfig(
        id=DocumentType.PASSPORT,
        label="Passport",
        description="International travel passport",
        requires_back=False,
        has_mrz=True,
    ),
}


class SideState(str, Enum):
    """Lifecycle of one captured document side."""
    EMPTY = "empty"
    CAPTURED = "captured"
    VALIDATING = "validating"
    VALIDATED = "validated"
    FAILED = "failed"


class FaceDetectionStatus(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    SUCCESS = "success"
    FAILED = "failed"


class UploadedFile(BaseModel):
    """A file supplied by the user (upload or webcam capture)."""
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class DocumentCapture(BaseModel):
    """Front/back captures of the identity document with their previews."""
    front: Optional[UploadedFile] = None
    front_preview: Optional[str] = None  # data URL
    back: Optional[UploadedFile] = None
    back_preview: Optional[str] = None

    def file_for(self, side: DocumentSide) -> Optional[UploadedFile]:
        return self.front if side == DocumentSide.FRONT else self.back

    def preview_for(self, side: DocumentSide) -> Optional[str]:
        return self.front_preview if side == DocumentSide.FRONT else self.back_preview

    def with_side(
        self,
        side: DocumentSide,
        file: Optional[UploadedFile],
        preview: Optional[str],
    ) -> "DocumentCapture":
        """Return a copy with one side replaced."""
        side_name = side.value
        return self.model_copy(update={side_name: file, f"{side_name}_preview": preview})


class PersonalInfo(BaseModel):
    """Personal data entered on the form."""
    full_name: str = ""
    email: str = ""
    date_of_birth: Optional[date] = None
    country_code: int = 0  # ISO 3166-1 numeric
    document_number: str = ""
    expiry_date: Optional[date] = None


class ExpectedPersonalData(BaseModel):
    """What the document oracle should find on the document."""
    full_name: str
    date_of_birth: str  # ISO YYYY-MM-DD
    country: str  # country name
    document_number: Optional[str] = None
    expiry_date: Optional[str] = None


class FieldMatch(BaseModel):
    score: int = 0
    max_score: int
    found: bool = False
    is_valid: Optional[bool] = None


class ValidationMatches(BaseModel):
    name: FieldMatch = Field(default_factory=lambda: FieldMatch(max_score=30))
    date_of_birth: FieldMatch = Field(default_factory=lambda: FieldMatch(max_score=25))
    country: FieldMatch = Field(default_factory=lambda: FieldMatch(max_score=15))
    document_number: FieldMatch = Field(default_factory=lambda: FieldMatch(max_score=15))
    expiry: FieldMatch = Field(default_factory=lambda: FieldMatch(max_score=15))


class FoundText(BaseModel):
    name: Optional[str] = None
    date_of_birth: Optional[str] = None
    country: Optional[str] = None
    document_number: Optional[str] = None
    expiry: Optional[str] = None


class MRZData(BaseModel):
    """Fields decoded from a machine readable zone."""
    format: str  # TD1 (ID card) or TD3 (passport)
    document_code: str
    issuing_country: str
    document_number: str
    surname: str
    given_names: str
    nationality: str
    date_of_birth: Optional[str] = None  # ISO
    sex: Optional[str] = None
    expiry_date: Optional[str] = None  # ISO
    check_digits_valid: bool = False
    raw_lines: List[str] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.given_names} {self.surname}".strip()


class ValidationResult(BaseModel):
    """
    Verdict of one document extraction/matching run.
    Replaced (never merged) on retry.
    """
    is_valid: bool
    confidence: int = Field(0, ge=0, le=100)
    matches: ValidationMatches = Field(default_factory=ValidationMatches)
    found_text: FoundText = Field(default_factory=FoundText)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    requires_manual_review: bool = False
    mrz_detected: bool = False
    mrz_data: Optional[MRZData] = None
    raw_text: Optional[str] = None
    processing_time_ms: int = 0

    @property
    def matched_fields(self) -> List[str]:
        return [name for name, match in self.matches if match.found]


class ValidationError(BaseModel):
    """User-facing error raised by the capture and validation pipeline."""
    code: str
    message: str
    recoverable: bool = True
    suggestion: Optional[str] = None


class FaceDetectionResult(BaseModel):
    face_detected: bool
    confidence: Optional[float] = None  # 0.0 - 1.0
    face_count: int = 0


class LivenessResult(BaseModel):
    passed: bool
    score: int = Field(0, ge=0, le=100)
    completed_challenges: int = 0
    total_challenges: int = 0
    timestamp: float = Field(default_factory=time.time)


class PendingKind(str, Enum):
    NONE = "none"
    INITIAL = "initial"
    UPGRADE = "upgrade"


class PendingRequestState(BaseModel):
    """Outstanding tier request as read from chain (source of truth)."""
    has_pending: bool = False
    pending_tier: Optional[int] = None
    kind: PendingKind = PendingKind.NONE
    was_upgrade_rejected: bool = False


class UpgradeRequirement(BaseModel):
    category: EvidenceCategory
    already_verified: bool = False

    @property
    def label(self) -> str:
        return self.category.label


class SubmissionResult(BaseModel):
    auto_approved: bool
    status: str
    verification_score: int
    tx_hash: Optional[str] = None


class Country(BaseModel):
    code: int  # ISO 3166-1 numeric
    name: str
    blocked: bool = False
