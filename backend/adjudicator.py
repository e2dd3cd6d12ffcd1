"""
Adjudicator - backend verification decision for KYC submissions and upgrades.

Rules are evaluated in order and the first failing rule decides the score.
Scores at or above MANUAL_REVIEW_THRESHOLD go to manual review instead of
being rejected outright.
"""

import logging
from dataclasses import dataclass
from datetime import date
from enum import IntEnum
from typing import Optional, Set

from config.settings import settings
from config.countries import is_blocked
from config.tiers import EvidenceCategory, Tier, to_tier
from backend.requirement_differ import outstanding_requirements, requirements_for_upgrade


logger = logging.getLogger(__name__)


class RejectionReason(IntEnum):
    """Reason codes written on chain when a submission is rejected."""
    NONE = 0
    BLOCKED_COUNTRY = 1
    UNDERAGE = 2
    DOCUMENT_EXPIRED = 3
    DOCUMENT_UNREADABLE = 4
    FACE_MISMATCH = 5
    LIVENESS_CHECK_FAILED = 6
    SANCTIONS_LIST = 7
    DUPLICATE_IDENTITY = 8
    SUSPICIOUS_ACTIVITY = 9
    OTHER = 10


class DecisionStatus:
    AUTO_APPROVED = "auto_approved"
    MANUAL_REVIEW = "manual_review"
    REJECTED = "rejected"


@dataclass
class VerificationDecision:
    """Outcome of evaluating one submission."""
    verification_score: int
    can_auto_approve: bool
    rejection_reason: RejectionReason = RejectionReason.NONE
    rejection_details: str = ""

    @property
    def status(self) -> str:
        if self.can_auto_approve:
            return DecisionStatus.AUTO_APPROVED
        if self.verification_score >= settings.MANUAL_REVIEW_THRESHOLD:
            return DecisionStatus.MANUAL_REVIEW
        return DecisionStatus.REJECTED


@dataclass
class SubmissionEvidence:
    """What the backend received in one submit request."""
    requested_level: int
    current_level: int = 0
    full_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    country_code: int = 0
    has_id: bool = False
    has_selfie: bool = False
    face_score: int = 0
    liveness_score: int = 0
    liveness_passed: bool = False
    has_accredited_proof: bool = False

    @property
    def is_upgrade(self) -> bool:
        return self.current_level > 0


def calculate_age(date_of_birth: date, today: Optional[date] = None) -> int:
    today = today or date.today()
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def _reject(score: int, reason: RejectionReason, details: str) -> VerificationDecision:
    return VerificationDecision(
        verification_score=score,
        can_auto_approve=False,
        rejection_reason=reason,
        rejection_details=details,
    )


def _check_biometrics(
    needed: Set[EvidenceCategory],
    evidence: SubmissionEvidence,
    suffix: str,
) -> Optional[VerificationDecision]:
    """Selfie, liveness and accredited-proof rules shared by both paths."""
    if EvidenceCategory.SELFIE in needed:
        if not evidence.has_selfie:
            return _reject(45, RejectionReason.DOCUMENT_UNREADABLE, f"Selfie photo required{suffix}")
        if evidence.face_score < settings.FACE_DETECTION_THRESHOLD:
            return _reject(
                50, RejectionReason.FACE_MISMATCH,
                f"Face detection score too low ({evidence.face_score}%, need {settings.FACE_DETECTION_THRESHOLD}%)",
            )

    if EvidenceCategory.LIVENESS in needed:
        if not evidence.liveness_passed:
            return _reject(50, RejectionReason.LIVENESS_CHECK_FAILED, f"Liveness verification required{suffix}")
        if evidence.liveness_score < settings.LIVENESS_SCORE_THRESHOLD:
            return _reject(
                55, RejectionReason.LIVENESS_CHECK_FAILED,
                f"Liveness score too low ({evidence.liveness_score}%, need {settings.LIVENESS_SCORE_THRESHOLD}%)",
            )

    if EvidenceCategory.ACCREDITED_PROOF in needed:
        if not evidence.has_accredited_proof:
            return _reject(50, RejectionReason.OTHER, "Accredited investor documentation required for Diamond tier")
        return VerificationDecision(
            verification_score=75,
            can_auto_approve=False,
            rejection_details="Diamond tier requires manual review",
        )

    return None


def evaluate_new_submission(evidence: SubmissionEvidence, today: Optional[date] = None) -> VerificationDecision:
    """Decision for a first-time KYC request."""
    needed = set(requirements_for_upgrade(Tier.NONE, evidence.requested_level))

    if is_blocked(evidence.country_code, settings.BLOCKED_COUNTRIES):
        return _reject(0, RejectionReason.BLOCKED_COUNTRY, "Country not supported for KYC verification")

    if evidence.date_of_birth and calculate_age(evidence.date_of_birth, today) < settings.MINIMUM_AGE:
        return _reject(0, RejectionReason.UNDERAGE, f"Must be at least {settings.MINIMUM_AGE} years old")

    if EvidenceCategory.PERSONAL_INFO in needed:
        if not evidence.full_name or not evidence.date_of_birth or not evidence.country_code:
            return _reject(30, RejectionReason.OTHER, "Personal information required")

    if EvidenceCategory.ID_DOCUMENT in needed and not evidence.has_id:
        return _reject(35, RejectionReason.DOCUMENT_UNREADABLE, "Government-issued ID document required")

    failed = _check_biometrics(needed, evidence, "")
    if failed:
        return failed

    score = 95 if evidence.requested_level >= Tier.GOLD and evidence.liveness_passed else 85
    return VerificationDecision(verification_score=score, can_auto_approve=True)


def evaluate_upgrade(evidence: SubmissionEvidence) -> VerificationDecision:
    """Decision for an upgrade from an approved tier; only new evidence is checked."""
    if evidence.requested_level <= evidence.current_level:
        return _reject(0, RejectionReason.OTHER, "Cannot upgrade to same or lower tier")

    needed = set(outstanding_requirements(evidence.current_level, evidence.requested_level))

    failed = _check_biometrics(needed, evidence, " for this upgrade")
    if failed:
        return failed

    score = 85
    if (
        EvidenceCategory.LIVENESS in needed
        and evidence.liveness_passed
        and evidence.liveness_score >= settings.LIVENESS_SCORE_THRESHOLD
    ):
        score = 95
    return VerificationDecision(verification_score=score, can_auto_approve=True)


def adjudicate(evidence: SubmissionEvidence, today: Optional[date] = None) -> VerificationDecision:
    if evidence.is_upgrade:
        decision = evaluate_upgrade(evidence)
    else:
        decision = evaluate_new_submission(evidence, today)

    logger.info(
        f"[Adjudicator] {to_tier(evidence.current_level).label} -> {to_tier(evidence.requested_level).label}: "
        f"score={decision.verification_score} status={decision.status} "
        f"reason={decision.rejection_reason.name}"
    )
    return decision
