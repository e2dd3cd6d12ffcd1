"""
Test Suite: Onboarding Workflow

Tests:
1. Tier selection gating
2. Form validation order
3. Score reconciliation
4. First-time request end to end
5. Upgrade end to end
6. Chain failures return to the form
7. Adjudication retry without a second transaction
8. Malformed or failing adjudication after confirmation
9. Unexpected chain and refresh errors
10. Unconfirmed transaction is re-checked, not resent
"""

import sys
import os
import io
import asyncio
from datetime import date

import httpx
from PIL import Image

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


INVESTOR = "0x" + "ab" * 20
CONTRACT = "0x" + "c1" * 20
CHAIN_ID = 43113
FEE = 10**16


# ============================================================================
# HELPERS
# ============================================================================

def make_upload(filename: str = "capture.png"):
    from config.document_schema import UploadedFile

    buffer = io.BytesIO()
    Image.new("RGB", (40, 20), (90, 90, 90)).save(buffer, format="PNG")
    return UploadedFile(filename=filename, content_type="image/png", data=buffer.getvalue())


def make_chain_config(**overrides):
    from config.settings import ChainConfig

    fields = dict(
        chain_id=CHAIN_ID,
        chain_name="Avalanche Fuji",
        kyc_manager_address=CONTRACT,
        kyc_fee_wei=FEE,
        native_currency="AVAX",
    )
    fields.update(overrides)
    return ChainConfig(**fields)


class FakeBackend:
    """MockTransport handler standing in for the KYC backend."""

    def __init__(self, fail_submits: int = 0, score: int = 85, auto_approved: bool = True, garbage_submits: int = 0):
        self.fail_submits = fail_submits
        self.garbage_submits = garbage_submits
        self.score = score
        self.auto_approved = auto_approved
        self.submit_keys = []

    def handler(self, request):
        path = request.url.path
        if path == "/api/kyc/countries":
            return httpx.Response(200, json=[{"code": 840, "name": "United States", "blocked": False}])
        if path.startswith("/api/kyc/status/"):
            return httpx.Response(200, json={"found": False, "submission": None})
        if path == "/api/kyc/submit":
            self.submit_keys.append(request.headers.get("Idempotency-Key"))
            if self.fail_submits:
                self.fail_submits -= 1
                raise httpx.ConnectError("connection refused", request=request)
            if self.garbage_submits:
                self.garbage_submits -= 1
                return httpx.Response(200, text="<html>bad gateway</html>")
            return httpx.Response(200, json={
                "success": True,
                "autoApproved": self.auto_approved,
                "verificationScore": self.score,
                "status": "auto_approved" if self.auto_approved else "manual_review",
            })
        return httpx.Response(404, json={"detail": "Not Found"})

    def client(self):
        from backend.kyc_api_client import KYCApiClient
        return KYCApiClient(base_url="http://kyc.test", transport=httpx.MockTransport(self.handler))


def make_workflow(contract=None, api_client=None, chain=None, wallet=None, pipeline=None, tx_timeout=5):
    from backend.chain import InMemoryKYCManager, InMemoryWallet
    from onboarding.workflow import OnboardingWorkflow
    from onboarding.capture_pipeline import CapturePipeline

    contract = contract or InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE, blocked_countries=[408])
    wallet = wallet or InMemoryWallet(INVESTOR, CHAIN_ID)
    api_client = api_client or FakeBackend().client()
    return OnboardingWorkflow(
        wallet,
        contract,
        api_client,
        chain or make_chain_config(),
        pipeline=pipeline or CapturePipeline(),
        tx_timeout=tx_timeout,
    )


def fill_bronze(workflow):
    from config.document_schema import DocumentType

    workflow.update_personal_info(
        full_name="Anna Eriksson",
        email="anna@example.com",
        date_of_birth=date(1990, 5, 15),
        country_code=840,
    )
    workflow.pipeline.change_document_type(DocumentType.PASSPORT)
    workflow.pipeline.capture_front(make_upload("passport.png"))
    workflow.agree_to_terms()


async def ready_bronze(workflow):
    await workflow.refresh()
    accepted, reason = workflow.select_tier(1)
    assert accepted, reason
    fill_bronze(workflow)
    assert workflow.validate_form() == (True, None)


# ============================================================================
# TESTS
# ============================================================================

def test_tier_selection_gating():
    """Selection needs a loaded guard, a deployed contract and a higher, non-pending tier."""
    print("\nTEST 1: Tier Selection")
    print("-" * 40)

    from config.tiers import Tier
    from backend.chain import InMemoryKYCManager, InMemoryWallet
    from onboarding.workflow import WorkflowStage

    async def run():
        workflow = make_workflow()
        accepted, reason = workflow.select_tier(1)
        assert not accepted and reason == "KYC status is still loading"

        await workflow.refresh()
        assert workflow.select_tier(0)[0] is False
        assert workflow.select_tier(7) == (False, "Unknown tier: 7")
        assert workflow.select_tier(None) == (False, "Unknown tier: None")
        assert workflow.stage == WorkflowStage.SELECT

        undeployed = make_workflow(chain=make_chain_config(kyc_manager_address=None))
        await undeployed.refresh()
        assert undeployed.select_tier(1) == (False, "KYC is not available on Avalanche Fuji")
        assert undeployed.stage == WorkflowStage.SELECT

        assert workflow.select_tier("silver") == (True, None)
        assert workflow.stage == WorkflowStage.FORM
        assert workflow.selected_tier == Tier.SILVER
        assert workflow.select_tier(3)[0] is False

        # Approved at Silver: Bronze and Silver are refused, nothing changes
        contract = InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE)
        await contract.submit_kyc(InMemoryWallet(INVESTOR, CHAIN_ID), 2, "0x" + "11" * 32, 840, FEE)
        await contract.approve_kyc(INVESTOR, 2)
        workflow = make_workflow(contract=contract)
        await workflow.refresh()
        for tier in (1, 2):
            accepted, reason = workflow.select_tier(tier)
            assert not accepted
            assert "already verified at Silver" in reason
            assert workflow.stage == WorkflowStage.SELECT
            assert workflow.selected_tier is None
        assert workflow.select_tier(3) == (True, None)

        # Pending request: nothing is selectable, the pending tier included
        await contract.request_upgrade(InMemoryWallet(INVESTOR, CHAIN_ID), 3, "0x" + "22" * 32, FEE)
        workflow = make_workflow(contract=contract)
        await workflow.refresh()
        for tier in (3, 4):
            accepted, reason = workflow.select_tier(tier)
            assert not accepted
            assert "pending request for Gold" in reason

    asyncio.run(run())
    print(" PASSED: Tier selection")


def test_form_validation_order():
    """The first failing check is reported; only outstanding categories are checked."""
    print("\nTEST 2: Form Validation")
    print("-" * 40)

    from config.document_schema import FaceDetectionResult, ValidationResult
    from onboarding.capture_pipeline import CapturePipeline
    from onboarding.liveness import score_challenges

    class Oracle:
        def __init__(self):
            self.result = ValidationResult(is_valid=False, confidence=20)

        async def validate(self, front, back, expected, document_type):
            return self.result

    class Detector:
        def __init__(self):
            self.face = False

        async def detect(self, selfie):
            return FaceDetectionResult(face_detected=self.face, confidence=0.9 if self.face else None)

    async def run():
        oracle, detector = Oracle(), Detector()
        pipeline = CapturePipeline(document_oracle=oracle, face_detector=detector)
        workflow = make_workflow(pipeline=pipeline)
        await workflow.refresh()
        assert workflow.select_tier(3) == (True, None)

        def reason():
            valid, message = workflow.validate_form()
            assert not valid
            return message

        assert reason() == "Please enter your full name"
        workflow.update_personal_info(full_name="Anna Eriksson", email="not-an-email")
        assert reason() == "Please enter a valid email address"
        workflow.update_personal_info(email="anna@example.com")
        assert reason() == "Please enter your date of birth"
        workflow.update_personal_info(date_of_birth=date(2015, 1, 1))
        assert reason() == "You must be at least 18 years old"
        workflow.update_personal_info(date_of_birth=date(1990, 5, 15))
        assert reason() == "Please select your country"
        workflow.update_personal_info(country_code=408)
        assert reason() == "KYC is not available in your country"
        workflow.update_personal_info(country_code=840)

        assert reason() == "Please upload the front of your ID document"
        pipeline.capture_front(make_upload("id_front.png"))
        assert reason() == "Please upload the back of your ID document"
        pipeline.capture_back(make_upload("id_back.png"))
        assert workflow.can_validate_document

        await workflow.validate_document()
        assert reason().startswith("ID document validation failed")
        oracle.result = ValidationResult(is_valid=True, confidence=88)
        await workflow.validate_document()

        assert reason() == "Please upload a selfie photo"
        await pipeline.upload_selfie(make_upload("selfie.png"))
        assert reason() == "No face detected in your selfie. Please take a new photo"
        detector.face = True
        await pipeline.upload_selfie(make_upload("selfie.png"))

        assert reason() == "Please complete the liveness check"
        workflow.liveness.open()
        workflow.liveness.on_complete(score_challenges(5, 5))

        assert reason() == "Please upload a proof of address"
        pipeline.set_address_proof(make_upload("bill.png"))

        assert reason() == "Please agree to the terms and conditions"
        workflow.agree_to_terms()
        assert workflow.validate_form() == (True, None)

        # Leaving the form resets every per-attempt field
        assert workflow.back_to_select() == (True, None)
        assert workflow.select_tier(1) == (True, None)
        assert workflow.personal_info.full_name == ""
        assert not workflow.terms_agreed
        assert pipeline.capture.front is None
        assert workflow.liveness.result is None

    asyncio.run(run())
    print(" PASSED: Form validation")


def test_score_reconciliation():
    """Backend score wins when non-zero; local approval needs a clean, valid result."""
    print("\nTEST 3: Score Reconciliation")
    print("-" * 40)

    from config.document_schema import ValidationResult
    from backend.kyc_api_client import AdjudicationResponse
    from onboarding.workflow import reconcile_submission

    local = ValidationResult(is_valid=True, confidence=40)

    result = reconcile_submission(AdjudicationResponse(verificationScore=85), local, threshold=70)
    assert result.verification_score == 85
    assert result.auto_approved
    assert result.status == "approved"

    result = reconcile_submission(AdjudicationResponse(verificationScore=0), local, threshold=70)
    assert result.verification_score == 40
    assert not result.auto_approved
    assert result.status == "pending"

    flagged = ValidationResult(is_valid=True, confidence=90, requires_manual_review=True)
    result = reconcile_submission(AdjudicationResponse(verificationScore=0), flagged, threshold=70)
    assert result.verification_score == 90
    assert not result.auto_approved

    # A backend hold is never overridden by a confident local result
    confident = ValidationResult(is_valid=True, confidence=90)
    for status in ("pending", "manual_review"):
        held = AdjudicationResponse(autoApproved=False, status=status, verificationScore=75)
        result = reconcile_submission(held, confident, threshold=70)
        assert not result.auto_approved
        assert result.status == status
        assert result.verification_score == 75

    result = reconcile_submission(
        AdjudicationResponse(autoApproved=True, verificationScore=95, status="auto_approved"),
        None,
        tx_hash="0xabc",
    )
    assert result.auto_approved
    assert result.status == "auto_approved"
    assert result.tx_hash == "0xabc"

    print(" PASSED: Score reconciliation")


def test_first_time_request_end_to_end():
    """select -> form -> signing -> processing -> submitted against the real backend."""
    print("\nTEST 4: First-time Request")
    print("-" * 40)

    from config.tiers import Tier
    from backend.api import app, SubmissionStore
    from backend.chain import InMemoryKYCManager, InMemoryWallet
    from backend.kyc_api_client import KYCApiClient
    from onboarding.workflow import WorkflowStage

    contract = InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE)
    app.state.store = SubmissionStore()
    app.state.contract = contract
    api_client = KYCApiClient(base_url="http://testserver", transport=httpx.ASGITransport(app=app))

    async def run():
        # Wallet starts on another network
        wallet = InMemoryWallet(INVESTOR, 1)
        workflow = make_workflow(contract=contract, api_client=api_client, wallet=wallet)
        await workflow.load_countries()
        assert not workflow.countries_fallback

        await ready_bronze(workflow)
        result = await workflow.submit()

        assert result is not None, workflow.submit_error
        assert workflow.stage == WorkflowStage.SUBMITTED
        assert wallet.switch_requests == [CHAIN_ID]
        assert wallet.balance_wei == 10**18 - FEE
        assert result.auto_approved
        assert result.verification_score == 85
        assert result.tx_hash == workflow.tx_hash
        assert contract.calls == ["submitKYC", "approveKYC"]

        # Refreshed from chain after submission
        assert workflow.approved_tier == Tier.BRONZE
        assert not workflow.guard.has_any_pending
        print(f"   tx={workflow.tx_hash[:12]}... status={result.status}")

    try:
        asyncio.run(run())
    finally:
        app.state.contract = None

    print(" PASSED: First-time request")


def test_upgrade_end_to_end():
    """Bronze -> Silver only collects the new evidence and recomputes afterwards."""
    print("\nTEST 5: Upgrade")
    print("-" * 40)

    from config.tiers import EvidenceCategory as E, Tier
    from backend.api import app, SubmissionStore
    from backend.chain import InMemoryKYCManager, InMemoryWallet
    from backend.kyc_api_client import KYCApiClient
    from onboarding.workflow import WorkflowStage

    contract = InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE)
    app.state.store = SubmissionStore()
    app.state.contract = contract
    api_client = KYCApiClient(base_url="http://testserver", transport=httpx.ASGITransport(app=app))

    async def run():
        wallet = InMemoryWallet(INVESTOR, CHAIN_ID)
        await contract.submit_kyc(wallet, 1, "0x" + "11" * 32, 840, FEE)
        await contract.approve_kyc(INVESTOR, 1)

        workflow = make_workflow(contract=contract, api_client=api_client, wallet=wallet)
        await workflow.refresh()
        assert workflow.is_upgrade
        assert workflow.select_tier(2) == (True, None)

        verified = {r.category for r in workflow.requirements if r.already_verified}
        assert verified == {E.PERSONAL_INFO, E.ID_DOCUMENT}
        assert set(workflow.outstanding) == {E.SELFIE, E.ADDRESS_PROOF}

        assert workflow.validate_form() == (False, "Please upload a selfie photo")
        await workflow.pipeline.upload_selfie(make_upload("selfie.png"))
        assert workflow.pipeline.face_detection_degraded
        workflow.pipeline.set_address_proof(make_upload("bill.png"))
        workflow.agree_to_terms()

        result = await workflow.submit()
        assert result is not None, workflow.submit_error
        assert workflow.stage == WorkflowStage.SUBMITTED
        assert contract.calls == ["submitKYC", "approveKYC", "requestUpgrade", "approveUpgrade"]

        assert workflow.approved_tier == Tier.SILVER
        assert workflow.requirements == []
        assert workflow.guard.is_selectable(3)

    try:
        asyncio.run(run())
    finally:
        app.state.contract = None

    print(" PASSED: Upgrade")


def test_chain_failures_return_to_form():
    """Rejections, fee reverts, reverted receipts and timeouts all land back in the form."""
    print("\nTEST 6: Chain Failures")
    print("-" * 40)

    from backend.chain import InMemoryKYCManager, InMemoryWallet
    from onboarding.workflow import WorkflowStage

    async def attempt(**kwargs):
        workflow = make_workflow(**kwargs)
        await ready_bronze(workflow)
        result = await workflow.submit()
        assert result is None
        assert workflow.stage == WorkflowStage.FORM
        assert not workflow.awaiting_adjudication
        print(f"   {workflow.submit_error}")
        return workflow

    async def run():
        workflow = await attempt(wallet=InMemoryWallet(INVESTOR, CHAIN_ID, reject_signing=True))
        assert workflow.submit_error == "Transaction was rejected"
        assert workflow.tx_hash is None

        workflow = await attempt(wallet=InMemoryWallet(INVESTOR, 1, refuse_switch=True))
        assert workflow.submit_error == "Transaction was rejected"
        assert workflow.contract.calls == []

        workflow = await attempt(chain=make_chain_config(kyc_fee_wei=FEE - 1))
        assert workflow.submit_error == "Insufficient fee. Please ensure you have enough AVAX."

        reverting = InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE)
        send = reverting.submit_kyc

        async def send_then_revert(*args):
            tx_hash = await send(*args)
            reverting.revert_on_confirm.add(tx_hash)
            return tx_hash

        reverting.submit_kyc = send_then_revert
        workflow = await attempt(contract=reverting)
        assert workflow.submit_error == "Transaction failed. Please try again."

        slow = InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE, confirmation_delay=1.0)
        workflow = await attempt(contract=slow, tx_timeout=0.05)
        assert "timed out" in workflow.submit_error

        # Incomplete form never reaches the wallet
        workflow = make_workflow()
        await workflow.refresh()
        workflow.select_tier(1)
        assert await workflow.submit() is None
        assert workflow.submit_error == "Please enter your full name"
        assert workflow.contract.calls == []

    asyncio.run(run())
    print(" PASSED: Chain failures")


def test_adjudication_retry_sends_no_second_transaction():
    """A network error after confirmation is retried with the same idempotency key only."""
    print("\nTEST 7: Adjudication Retry")
    print("-" * 40)

    from onboarding.workflow import WorkflowStage

    async def run():
        for retry in ("retry_verification", "submit"):
            backend = FakeBackend(fail_submits=1)
            workflow = make_workflow(api_client=backend.client())
            await ready_bronze(workflow)

            assert await workflow.submit() is None
            assert workflow.stage == WorkflowStage.FORM
            assert workflow.awaiting_adjudication
            assert "confirmed" in workflow.submit_error
            assert "not be charged again" in workflow.submit_error
            assert workflow.back_to_select()[0] is False
            tx_hash = workflow.tx_hash

            result = await getattr(workflow, retry)()
            assert result is not None
            assert result.auto_approved
            assert workflow.stage == WorkflowStage.SUBMITTED
            assert not workflow.awaiting_adjudication
            assert workflow.contract.calls == ["submitKYC"]
            assert workflow.wallet.signed == ["submitKYC"]
            assert backend.submit_keys == [tx_hash, tx_hash]
            print(f"   {retry}: 1 transaction, {len(backend.submit_keys)} adjudication calls")

        workflow = make_workflow()
        assert await workflow.retry_verification() is None
        assert "no confirmed transaction" in workflow.submit_error

    asyncio.run(run())
    print(" PASSED: Adjudication retry")


def test_adjudication_failure_after_confirmation():
    """A garbled backend body or an unexpected error leaves a retryable form, never processing."""
    print("\nTEST 8: Adjudication Failure After Confirmation")
    print("-" * 40)

    from onboarding.workflow import WorkflowStage

    async def run():
        backend = FakeBackend(garbage_submits=1)
        workflow = make_workflow(api_client=backend.client())
        await ready_bronze(workflow)

        assert await workflow.submit() is None
        assert workflow.stage == WorkflowStage.FORM
        assert workflow.awaiting_adjudication
        assert "confirmed" in workflow.submit_error
        print(f"   {workflow.submit_error}")
        tx_hash = workflow.tx_hash

        result = await workflow.retry_verification()
        assert result is not None
        assert workflow.stage == WorkflowStage.SUBMITTED
        assert workflow.contract.calls == ["submitKYC"]
        assert backend.submit_keys == [tx_hash, tx_hash]

        workflow = make_workflow()
        await ready_bronze(workflow)
        submit_verification = workflow.api_client.submit_verification

        async def explode(*args, **kwargs):
            raise RuntimeError("serializer crashed")

        workflow.api_client.submit_verification = explode
        assert await workflow.submit() is None
        assert workflow.stage == WorkflowStage.FORM
        assert workflow.awaiting_adjudication
        assert "serializer crashed" in workflow.submit_error
        assert "not be charged again" in workflow.submit_error

        workflow.api_client.submit_verification = submit_verification
        assert await workflow.submit() is not None
        assert workflow.stage == WorkflowStage.SUBMITTED
        assert workflow.contract.calls == ["submitKYC"]

    asyncio.run(run())
    print(" PASSED: Adjudication failure after confirmation")


def test_unexpected_chain_errors_return_to_form():
    """RPC and wallet errors outside the known types still end in the form."""
    print("\nTEST 9: Unexpected Chain Errors")
    print("-" * 40)

    from backend.chain import DEFAULT_CHAIN_ERROR, InMemoryWallet
    from onboarding.workflow import WorkflowStage

    async def run():
        # Receipt lookup loses the RPC node after the transaction was sent
        workflow = make_workflow()
        await ready_bronze(workflow)
        wait_for_receipt = workflow.contract.wait_for_receipt

        async def unreachable(tx_hash, timeout):
            raise ConnectionError("rpc node unreachable")

        workflow.contract.wait_for_receipt = unreachable
        assert await workflow.submit() is None
        assert workflow.stage == WorkflowStage.FORM
        assert workflow.submit_error == DEFAULT_CHAIN_ERROR
        assert workflow.awaiting_confirmation
        assert workflow.tx_hash is not None

        workflow.contract.wait_for_receipt = wait_for_receipt
        result = await workflow.submit()
        assert result is not None, workflow.submit_error
        assert workflow.stage == WorkflowStage.SUBMITTED
        assert workflow.contract.calls == ["submitKYC"]
        assert not workflow.awaiting_confirmation

        # Wallet transport error before anything is sent
        class BrokenWallet(InMemoryWallet):
            async def sign_transaction(self, to, function, args, value):
                raise OSError("wallet bridge closed")

        workflow = make_workflow(wallet=BrokenWallet(INVESTOR, CHAIN_ID))
        await ready_bronze(workflow)
        assert await workflow.submit() is None
        assert workflow.stage == WorkflowStage.FORM
        assert workflow.submit_error == DEFAULT_CHAIN_ERROR
        assert workflow.tx_hash is None
        assert not workflow.awaiting_confirmation
        assert workflow.contract.calls == []

        # Pending-flag refresh failing after confirmation does not block adjudication
        workflow = make_workflow()
        await ready_bronze(workflow)

        async def refresh_fails():
            raise RuntimeError("status read failed")

        workflow.guard.refresh = refresh_fails
        result = await workflow.submit()
        assert result is not None
        assert workflow.stage == WorkflowStage.SUBMITTED

    asyncio.run(run())
    print(" PASSED: Unexpected chain errors")


def test_unconfirmed_transaction_is_rechecked():
    """A receipt timeout keeps the hash; the next submit waits for it instead of paying again."""
    print("\nTEST 10: Unconfirmed Transaction Re-check")
    print("-" * 40)

    from backend.chain import InMemoryKYCManager
    from onboarding.workflow import WorkflowStage

    async def run():
        backend = FakeBackend()
        contract = InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE, confirmation_delay=0.3)
        workflow = make_workflow(contract=contract, api_client=backend.client(), tx_timeout=0.05)
        await ready_bronze(workflow)

        assert await workflow.submit() is None
        assert workflow.stage == WorkflowStage.FORM
        assert "timed out" in workflow.submit_error
        assert workflow.awaiting_confirmation
        assert not workflow.awaiting_adjudication
        tx_hash = workflow.tx_hash
        assert tx_hash is not None

        # Guard re-read after the timeout sees the request on chain
        assert workflow.guard.has_any_pending
        accepted, reason = workflow.back_to_select()
        assert not accepted
        assert "still being confirmed" in reason
        print(f"   {workflow.submit_error}")

        contract.confirmation_delay = 0
        result = await workflow.submit()
        assert result is not None, workflow.submit_error
        assert workflow.stage == WorkflowStage.SUBMITTED
        assert result.tx_hash == tx_hash
        assert contract.calls == ["submitKYC"]
        assert workflow.wallet.signed == ["submitKYC"]
        assert backend.submit_keys == [tx_hash]
        assert not workflow.awaiting_confirmation

    asyncio.run(run())
    print(" PASSED: Unconfirmed transaction re-check")
