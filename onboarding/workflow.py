"""
Submission State Machine - the onboarding controller.

    select -> form -> signing -> processing -> submitted

Only this controller changes the stage or talks to the chain and the
adjudication backend. Capture, liveness and pending-request state are read
from their owners.

The payable transaction is sent at most once per attempt: once it is
confirmed, its hash is kept and later submit()/retry_verification() calls
re-issue only the adjudication request, with the hash as idempotency key.
A sent transaction whose receipt never arrived is kept too; the next
submit() waits for that receipt again instead of sending another payment.
"""

import asyncio
import json
import logging
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple

from config.settings import settings, ChainConfig
from config.tiers import EvidenceCategory, Tier, MAX_TIER, to_tier
from config.countries import get_country_name, is_blocked
from config.document_schema import (
    Country,
    FaceDetectionStatus,
    PersonalInfo,
    SubmissionResult,
    UpgradeRequirement,
    UploadedFile,
    ValidationResult,
)
from backend.adjudicator import calculate_age
from backend.chain import (
    DEFAULT_CHAIN_ERROR,
    ContractError,
    KYCContract,
    Wallet,
    WalletError,
    compute_document_hash,
    map_contract_error,
)
from backend.kyc_api_client import AdjudicationResponse, KYCApiClient, KYCApiError
from backend.requirement_differ import requirements_with_status
from onboarding.capture_pipeline import CapturePipeline
from onboarding.liveness import LivenessOrchestrator
from onboarding.pending_guard import PendingRequestGuard


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

APPROVED_STATUSES = ("approved", "auto_approved")


class WorkflowStage(str, Enum):
    SELECT = "select"
    FORM = "form"
    SIGNING = "signing"
    PROCESSING = "processing"
    SUBMITTED = "submitted"


def reconcile_submission(
    response: AdjudicationResponse,
    local: Optional[ValidationResult],
    tx_hash: Optional[str] = None,
    threshold: Optional[int] = None,
) -> SubmissionResult:
    """
    Combine the backend decision with the local document validation.

    The backend score wins when non-zero. Local auto-approval requires a valid
    result, a reconciled score at or above threshold and no manual review flag.
    A backend status other than an approval counts as such a flag.
    """
    threshold = threshold if threshold is not None else settings.LOCAL_AUTO_APPROVAL_THRESHOLD
    local_confidence = local.confidence if local is not None else 0
    score = response.verification_score if response.verification_score > 0 else local_confidence
    backend_held = response.status is not None and response.status not in APPROVED_STATUSES

    locally_approved = (
        not backend_held
        and local is not None
        and local.is_valid
        and score >= threshold
        and not local.requires_manual_review
    )
    auto_approved = response.auto_approved or locally_approved

    return SubmissionResult(
        auto_approved=auto_approved,
        status=response.status or ("approved" if auto_approved else "pending"),
        verification_score=score,
        tx_hash=tx_hash,
    )


class OnboardingWorkflow:
    """Tiered KYC onboarding controller for one connected wallet."""

    def __init__(
        self,
        wallet: Wallet,
        contract: KYCContract,
        api_client: KYCApiClient,
        chain: ChainConfig,
        pipeline: Optional[CapturePipeline] = None,
        liveness: Optional[LivenessOrchestrator] = None,
        guard: Optional[PendingRequestGuard] = None,
        tx_timeout: Optional[float] = None,
    ):
        self.wallet = wallet
        self.contract = contract
        self.api_client = api_client
        self.chain = chain
        self.pipeline = pipeline or CapturePipeline.from_settings()
        self.liveness = liveness or LivenessOrchestrator()
        self.guard = guard or PendingRequestGuard(contract, wallet.address, api_client)
        self.tx_timeout = tx_timeout if tx_timeout is not None else settings.TX_CONFIRMATION_TIMEOUT_SECONDS

        self.stage = WorkflowStage.SELECT
        self.selected_tier: Optional[Tier] = None
        self.countries: List[Country] = []
        self.countries_fallback = False

        self.personal_info = PersonalInfo()
        self.terms_agreed = False
        self.submit_error: Optional[str] = None
        self.submission_result: Optional[SubmissionResult] = None
        self.tx_hash: Optional[str] = None
        self._sent_tx: Optional[str] = None
        self._confirmed_tx: Optional[str] = None

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def approved_tier(self) -> Tier:
        return self.guard.approved_tier

    @property
    def is_upgrade(self) -> bool:
        return self.approved_tier > Tier.NONE

    @property
    def awaiting_adjudication(self) -> bool:
        """A confirmed transaction has not been adjudicated yet."""
        return self._confirmed_tx is not None

    @property
    def awaiting_confirmation(self) -> bool:
        """A sent transaction has no known outcome yet (e.g. its receipt wait timed out)."""
        return self._sent_tx is not None

    @property
    def requirements(self) -> List[UpgradeRequirement]:
        """Recomputed on every read against the current approved tier."""
        if self.selected_tier is None:
            return []
        return requirements_with_status(self.approved_tier, self.selected_tier)

    @property
    def outstanding(self) -> List[EvidenceCategory]:
        return [r.category for r in self.requirements if not r.already_verified]

    def needs(self, category: EvidenceCategory) -> bool:
        return category in self.outstanding

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_countries(self) -> List[Country]:
        self.countries, self.countries_fallback = await self.api_client.fetch_countries_with_fallback()
        return self.countries

    async def refresh(self) -> None:
        """Re-read approved tier and pending flags from chain."""
        await self.guard.refresh()

    def country_name(self, code: int) -> Optional[str]:
        for country in self.countries:
            if country.code == code:
                return country.name
        return get_country_name(code)

    def is_country_blocked(self, code: int) -> bool:
        if is_blocked(code, settings.BLOCKED_COUNTRIES):
            return True
        return any(c.code == code and c.blocked for c in self.countries)

    # ------------------------------------------------------------------
    # Transitions: select <-> form
    # ------------------------------------------------------------------

    def _reset_attempt(self) -> None:
        self.pipeline.reset()
        self.liveness.reset()
        self.personal_info = PersonalInfo()
        self.terms_agreed = False
        self.submit_error = None
        self.submission_result = None
        self.tx_hash = None

    def select_tier(self, tier) -> Tuple[bool, Optional[str]]:
        """
        select -> form.

        Returns:
            (accepted, reason) - on refusal nothing changes
        """
        if self.stage != WorkflowStage.SELECT:
            return False, "Finish or cancel the current request first"

        try:
            target = to_tier(tier)
        except (ValueError, TypeError):
            return False, f"Unknown tier: {tier}"
        if target == Tier.NONE or target > MAX_TIER:
            return False, "Please choose a verification tier"

        if not self.chain.is_deployed:
            return False, f"KYC is not available on {self.chain.chain_name}"

        if self.guard.has_any_pending:
            pending = self.guard.pending_tier
            label = f" for {to_tier(pending).label}" if pending else ""
            return False, f"You already have a pending request{label}. Please wait for it to be reviewed."

        if not self.guard.is_selectable(target):
            if not self.guard.loaded:
                return False, "KYC status is still loading"
            return False, f"You are already verified at {self.approved_tier.label}. Choose a higher tier."

        self._reset_attempt()
        self.selected_tier = target
        self.stage = WorkflowStage.FORM
        logger.info(f"[Workflow] Selected {target.label} (approved: {self.approved_tier.label})")
        return True, None

    def back_to_select(self) -> Tuple[bool, Optional[str]]:
        if self.stage in (WorkflowStage.SIGNING, WorkflowStage.PROCESSING):
            return False, "A transaction is in progress"
        if self.awaiting_confirmation:
            return False, "Your transaction is still being confirmed. Submit again to check its status."
        if self.awaiting_adjudication:
            return False, "Your payment is confirmed. Please retry verification to finish this request."

        self._reset_attempt()
        self.selected_tier = None
        self.stage = WorkflowStage.SELECT
        return True, None

    # ------------------------------------------------------------------
    # Form
    # ------------------------------------------------------------------

    def update_personal_info(self, **fields) -> PersonalInfo:
        self.personal_info = self.personal_info.model_copy(update=fields)
        return self.personal_info

    def agree_to_terms(self, agreed: bool = True) -> None:
        self.terms_agreed = agreed

    def _personal_info_problem(self) -> Optional[str]:
        info = self.personal_info
        if len(info.full_name.strip()) < 2:
            return "Please enter your full name"
        if not EMAIL_PATTERN.match(info.email.strip()):
            return "Please enter a valid email address"
        if info.date_of_birth is None:
            return "Please enter your date of birth"
        if calculate_age(info.date_of_birth) < settings.MINIMUM_AGE:
            return f"You must be at least {settings.MINIMUM_AGE} years old"
        if not info.country_code:
            return "Please select your country"
        if self.is_country_blocked(info.country_code):
            return "KYC is not available in your country"
        return None

    def _document_problem(self) -> Optional[str]:
        pipeline = self.pipeline
        if pipeline.capture.front is None:
            return "Please upload the front of your ID document"
        if pipeline.requires_back and pipeline.capture.back is None:
            return "Please upload the back of your ID document"
        if pipeline.is_validating:
            return "Please wait for document validation to finish"
        result = pipeline.validation_result
        if result is not None and not result.is_valid:
            return "ID document validation failed. Please recapture your document or retry validation"
        return None

    def _selfie_problem(self) -> Optional[str]:
        if self.pipeline.selfie is None:
            return "Please upload a selfie photo"
        if self.pipeline.face_status == FaceDetectionStatus.DETECTING:
            return "Please wait for face detection to complete"
        if self.pipeline.face_status != FaceDetectionStatus.SUCCESS:
            return "No face detected in your selfie. Please take a new photo"
        return None

    def validate_form(self) -> Tuple[bool, Optional[str]]:
        """Full pre-submit check; the first failing check is reported."""
        if not self.chain.is_deployed:
            return False, f"KYC is not available on {self.chain.chain_name}"
        if self.selected_tier is None:
            return False, "Please choose a verification tier"

        checks = [
            (EvidenceCategory.PERSONAL_INFO, self._personal_info_problem),
            (EvidenceCategory.ID_DOCUMENT, self._document_problem),
            (EvidenceCategory.SELFIE, self._selfie_problem),
            (EvidenceCategory.LIVENESS, lambda: None if self.liveness.passed else "Please complete the liveness check"),
            (EvidenceCategory.ADDRESS_PROOF, lambda: None if self.pipeline.address_proof else "Please upload a proof of address"),
            (EvidenceCategory.ACCREDITED_PROOF, lambda: None if self.pipeline.accredited_proof else "Please upload accredited investor documentation"),
        ]
        outstanding = set(self.outstanding)
        for category, check in checks:
            if category in outstanding:
                problem = check()
                if problem:
                    return False, problem

        if not self.terms_agreed:
            return False, "Please agree to the terms and conditions"
        return True, None

    # ------------------------------------------------------------------
    # Submission: form -> signing -> processing -> submitted
    # ------------------------------------------------------------------

    def _document_hash(self) -> str:
        selfie = self.pipeline.selfie.data if self.pipeline.selfie else None
        front = self.pipeline.capture.front.data if self.pipeline.capture.front else None
        return compute_document_hash(selfie, front, self.wallet.address)

    async def _ensure_chain(self) -> None:
        if await self.wallet.get_chain_id() != self.chain.chain_id:
            logger.info(f"[Workflow] Switching wallet to {self.chain.chain_name}")
            await self.wallet.switch_chain(self.chain.chain_id)
            if await self.wallet.get_chain_id() != self.chain.chain_id:
                raise WalletError(f"Please switch your wallet to {self.chain.chain_name}")

    async def _send_transaction(self) -> str:
        """signing -> processing; returns the confirmed transaction hash."""
        await self._ensure_chain()
        document_hash = self._document_hash()

        if self.is_upgrade:
            tx_hash = await self.contract.request_upgrade(
                self.wallet, int(self.selected_tier), document_hash, self.chain.kyc_fee_wei
            )
        else:
            tx_hash = await self.contract.submit_kyc(
                self.wallet,
                int(self.selected_tier),
                document_hash,
                self.personal_info.country_code,
                self.chain.kyc_fee_wei,
            )

        self._sent_tx = tx_hash
        logger.info(f"[Workflow] Transaction sent: {tx_hash}")
        return await self._await_receipt(tx_hash)

    async def _await_receipt(self, tx_hash: str) -> str:
        """
        processing: wait for the receipt of a sent transaction.

        The hash stays in _sent_tx until the chain gives a definite answer, so a
        timeout or a lost RPC connection is re-checked instead of paid twice.
        """
        self.tx_hash = tx_hash
        self.stage = WorkflowStage.PROCESSING

        try:
            receipt = await asyncio.wait_for(
                self.contract.wait_for_receipt(tx_hash, self.tx_timeout), self.tx_timeout
            )
        except asyncio.TimeoutError:
            raise ContractError("timeout", f"Transaction {tx_hash} was not confirmed in time")
        except ContractError as e:
            if e.reason != "timeout":
                self._sent_tx = None
            raise

        self._sent_tx = None
        if not receipt.success:
            raise ContractError("reverted", "Transaction reverted")
        return tx_hash

    async def _refresh_guard(self, when: str) -> None:
        try:
            await self.guard.refresh()
        except Exception as e:
            logger.warning(f"[Workflow] Pending refresh {when} failed: {e}")

    def _submission_fields(self, tx_hash: str) -> Dict[str, str]:
        info = self.personal_info
        pipeline = self.pipeline
        fields = {
            "walletAddress": self.wallet.address,
            "requestedLevel": str(int(self.selected_tier)),
            "currentLevel": str(int(self.approved_tier)),
            "isUpgrade": str(self.is_upgrade).lower(),
            "chainId": str(self.chain.chain_id),
            "txHash": tx_hash,
            "documentType": pipeline.document_type.value,
            "faceScore": str(pipeline.face_score),
        }
        if self.needs(EvidenceCategory.PERSONAL_INFO):
            fields.update({
                "fullName": info.full_name.strip(),
                "email": info.email.strip(),
                "dateOfBirth": info.date_of_birth.isoformat() if info.date_of_birth else "",
                "countryCode": str(info.country_code),
            })
            if info.document_number:
                fields["documentNumber"] = info.document_number
            if info.expiry_date:
                fields["expiryDate"] = info.expiry_date.isoformat()
        if pipeline.validation_result is not None:
            fields["idValidation"] = pipeline.validation_result.model_dump_json(exclude={"raw_text"})
        if self.liveness.result is not None:
            result = self.liveness.result
            fields["livenessScore"] = str(result.score)
            fields["livenessPassed"] = str(result.passed).lower()
            fields["livenessResult"] = json.dumps(result.model_dump())
        return fields

    def _submission_files(self) -> Dict[str, UploadedFile]:
        pipeline = self.pipeline
        candidates = {
            "idDocumentFront": (EvidenceCategory.ID_DOCUMENT, pipeline.capture.front),
            "idDocumentBack": (EvidenceCategory.ID_DOCUMENT, pipeline.capture.back if pipeline.requires_back else None),
            "selfie": (EvidenceCategory.SELFIE, pipeline.selfie),
            "addressProof": (EvidenceCategory.ADDRESS_PROOF, pipeline.address_proof),
            "accreditedProof": (EvidenceCategory.ACCREDITED_PROOF, pipeline.accredited_proof),
        }
        return {
            name: upload
            for name, (category, upload) in candidates.items()
            if upload is not None and self.needs(category)
        }

    async def _adjudicate(self) -> Optional[SubmissionResult]:
        """processing -> submitted; only ever called with a confirmed transaction."""
        tx_hash = self._confirmed_tx
        self.stage = WorkflowStage.PROCESSING
        self.submit_error = None

        try:
            response = await self.api_client.submit_verification(
                self._submission_fields(tx_hash),
                self._submission_files(),
                idempotency_key=tx_hash,
            )
            result = reconcile_submission(response, self.pipeline.validation_result, tx_hash)
        except KYCApiError as e:
            logger.warning(f"[Workflow] Adjudication failed for confirmed tx {tx_hash}: {e}")
            return self._adjudication_failed(e.message)
        except Exception as e:
            logger.exception(f"[Workflow] Unexpected adjudication failure for confirmed tx {tx_hash}")
            return self._adjudication_failed(str(e) or type(e).__name__)

        self.submission_result = result
        self._confirmed_tx = None
        self.stage = WorkflowStage.SUBMITTED
        logger.info(
            f"[Workflow] Submitted: status={result.status} score={result.verification_score} "
            f"auto_approved={result.auto_approved}"
        )

        try:
            await self.refresh()
        except Exception as e:
            logger.warning(f"[Workflow] Post-submit refresh failed: {e}")
        return result

    def _adjudication_failed(self, detail: str) -> None:
        self.submit_error = (
            f"Your payment transaction was confirmed, but verification could not be completed "
            f"({detail}). Retry verification; you will not be charged again."
        )
        self.stage = WorkflowStage.FORM
        return None

    async def submit(self) -> Optional[SubmissionResult]:
        """
        Run the full submission cycle from the form stage.

        Returns the SubmissionResult, or None with submit_error set; every
        failure path ends back in the form stage.
        """
        if self.stage != WorkflowStage.FORM:
            self.submit_error = "Nothing to submit"
            return None

        if self.awaiting_adjudication:
            return await self._adjudicate()

        if not self.awaiting_confirmation:
            valid, reason = self.validate_form()
            if not valid:
                self.submit_error = reason
                return None

        self.submit_error = None
        try:
            if self.awaiting_confirmation:
                logger.info(f"[Workflow] Re-checking unconfirmed transaction {self._sent_tx}")
                tx_hash = await self._await_receipt(self._sent_tx)
            else:
                self.stage = WorkflowStage.SIGNING
                tx_hash = await self._send_transaction()
        except (ContractError, WalletError) as e:
            logger.warning(f"[Workflow] Transaction failed: {e}")
            self.submit_error = map_contract_error(e, self.chain.native_currency)
            return await self._transaction_failed()
        except Exception:
            logger.exception("[Workflow] Unexpected transaction failure")
            self.submit_error = DEFAULT_CHAIN_ERROR
            return await self._transaction_failed()

        self._confirmed_tx = tx_hash
        await self._refresh_guard("after confirmation")
        return await self._adjudicate()

    async def _transaction_failed(self) -> None:
        """Back to the form; an unconfirmed hash is kept so the next submit re-checks it."""
        self.tx_hash = self._sent_tx
        self.stage = WorkflowStage.FORM
        if self.awaiting_confirmation:
            await self._refresh_guard("after unconfirmed transaction")
        return None

    async def retry_verification(self) -> Optional[SubmissionResult]:
        """Re-issue only the adjudication call for an already confirmed transaction."""
        if not self.awaiting_adjudication:
            self.submit_error = "There is no confirmed transaction awaiting verification"
            return None
        if self.stage != WorkflowStage.FORM:
            return None
        return await self._adjudicate()

    # ------------------------------------------------------------------
    # Capture pass-throughs used by the interaction layer
    # ------------------------------------------------------------------

    async def validate_document(self) -> Optional[ValidationResult]:
        return await self.pipeline.validate(
            self.personal_info, self.country_name(self.personal_info.country_code)
        )

    @property
    def can_validate_document(self) -> bool:
        return self.pipeline.can_validate(self.personal_info)
