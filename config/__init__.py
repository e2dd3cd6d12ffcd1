# Config module
from .settings import settings, validate_settings, configure_logging, ChainConfig, Settings
from .tiers import (
    Tier,
    EvidenceCategory,
    TIER_REQUIREMENTS,
    DEFAULT_TIER_LIMITS,
    MAX_TIER,
    limit_for,
    format_limit,
    verified_evidence_set,
    check_tier_table,
)
from .document_schema import (
    DocumentType,
    DocumentSide,
    DOCUMENT_TYPES,
    SideState,
    FaceDetectionStatus,
    UploadedFile,
    DocumentCapture,
    PersonalInfo,
    ExpectedPersonalData,
    MRZData,
    ValidationResult,
    ValidationError,
    FaceDetectionResult,
    LivenessResult,
    PendingKind,
    PendingRequestState,
    UpgradeRequirement,
    SubmissionResult,
    Country,
)
from .countries import (
    FALLBACK_COUNTRIES,
    get_supported_countries,
    get_country_name,
)

__all__ = [
    "settings",
    "validate_settings",
    "configure_logging",
    "ChainConfig",
    "Settings",
    "Tier",
    "EvidenceCategory",
    "TIER_REQUIREMENTS",
    "DEFAULT_TIER_LIMITS",
    "MAX_TIER",
    "limit_for",
    "format_limit",
    "verified_evidence_set",
    "check_tier_table",
    "DocumentType",
    "DocumentSide",
    "DOCUMENT_TYPES",
    "SideState",
    "FaceDetectionStatus",
    "UploadedFile",
    "DocumentCapture",
    "PersonalInfo",
    "ExpectedPersonalData",
    "MRZData",
    "ValidationResult",
    "ValidationError",
    "FaceDetectionResult",
    "LivenessResult",
    "PendingKind",
    "PendingRequestState",
    "UpgradeRequirement",
    "SubmissionResult",
    "Country",
    "FALLBACK_COUNTRIES",
    "get_supported_countries",
    "get_country_name",
]
