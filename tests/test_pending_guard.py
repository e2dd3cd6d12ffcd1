"""
Test Suite: Pending-Request Guard

Tests:
1. Nothing is selectable before the first refresh
2. Fresh account
3. Pending initial request blocks every tier
4. Pending tier recovered from the backend
5. Approved tier and pending upgrades
6. Rejected upgrade
"""

import sys
import os
import asyncio

import httpx

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


INVESTOR = "0x" + "ab" * 20
CONTRACT = "0x" + "c1" * 20
CHAIN_ID = 43113
FEE = 10**16


def make_chain():
    from backend.chain import InMemoryKYCManager, InMemoryWallet

    contract = InMemoryKYCManager(CONTRACT, CHAIN_ID, FEE)
    wallet = InMemoryWallet(INVESTOR, CHAIN_ID)
    return contract, wallet


def status_client(handler):
    from backend.kyc_api_client import KYCApiClient
    return KYCApiClient(base_url="http://kyc.test", transport=httpx.MockTransport(handler))


def test_not_selectable_before_refresh():
    """Unknown chain state never allows a selection."""
    print("\nTEST 1: Before Refresh")
    print("-" * 40)

    from onboarding.pending_guard import PendingRequestGuard

    contract, _ = make_chain()
    guard = PendingRequestGuard(contract, INVESTOR)
    assert not guard.loaded
    assert not any(guard.is_selectable(tier) for tier in range(1, 5))

    print(" PASSED: Before refresh")


def test_fresh_account():
    """No record on chain: every tier above None is selectable."""
    print("\nTEST 2: Fresh Account")
    print("-" * 40)

    from config.tiers import Tier
    from onboarding.pending_guard import PendingRequestGuard

    async def run():
        contract, _ = make_chain()
        guard = PendingRequestGuard(contract, INVESTOR)
        state = await guard.refresh()
        assert not state.has_pending
        assert guard.approved_tier == Tier.NONE
        assert not guard.is_selectable(0)
        assert all(guard.is_selectable(tier) for tier in range(1, 5))

    asyncio.run(run())
    print(" PASSED: Fresh account")


def test_pending_initial_request_blocks_all_tiers():
    """While a request is outstanding no tier is selectable, the pending one included."""
    print("\nTEST 3: Pending Initial Request")
    print("-" * 40)

    from config.document_schema import PendingKind
    from onboarding.pending_guard import PendingRequestGuard

    async def run():
        contract, wallet = make_chain()
        await contract.submit_kyc(wallet, 2, "0x" + "11" * 32, 840, FEE)

        guard = PendingRequestGuard(contract, INVESTOR)
        state = await guard.refresh()
        assert state.has_pending
        assert state.kind == PendingKind.INITIAL
        assert state.pending_tier is None
        assert guard.has_any_pending
        for tier in range(0, 5):
            assert not guard.is_selectable(tier)

    asyncio.run(run())
    print(" PASSED: Pending initial request")


def test_pending_tier_recovered_from_backend():
    """The requested level of a first-time request comes from the status endpoint."""
    print("\nTEST 4: Pending Tier Recovery")
    print("-" * 40)

    from onboarding.pending_guard import PendingRequestGuard

    def found(request):
        assert request.url.path == f"/api/kyc/status/{INVESTOR}"
        return httpx.Response(200, json={"found": True, "submission": {"requestedLevel": 2}})

    def offline(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        contract, wallet = make_chain()
        await contract.submit_kyc(wallet, 2, "0x" + "11" * 32, 840, FEE)

        guard = PendingRequestGuard(contract, INVESTOR, status_client(found))
        await guard.refresh()
        assert guard.pending_tier == 2

        # Backend outage leaves the tier unknown but the block in place
        guard = PendingRequestGuard(contract, INVESTOR, status_client(offline))
        await guard.refresh()
        assert guard.has_any_pending
        assert guard.pending_tier is None

    asyncio.run(run())
    print(" PASSED: Pending tier recovery")


def test_approved_and_pending_upgrade():
    """Only higher tiers are selectable, and none while an upgrade is pending."""
    print("\nTEST 5: Approved Tier and Upgrade")
    print("-" * 40)

    from config.tiers import Tier
    from config.document_schema import PendingKind
    from onboarding.pending_guard import PendingRequestGuard

    async def run():
        contract, wallet = make_chain()
        await contract.submit_kyc(wallet, 1, "0x" + "11" * 32, 840, FEE)
        await contract.approve_kyc(INVESTOR, 1)

        guard = PendingRequestGuard(contract, INVESTOR)
        await guard.refresh()
        assert guard.approved_tier == Tier.BRONZE
        assert guard.snapshot.country_code == 840
        assert not guard.is_selectable(1)
        assert guard.is_selectable(2) and guard.is_selectable(4)

        await contract.request_upgrade(wallet, 3, "0x" + "22" * 32, FEE)
        # Local state is stale until refreshed from chain
        assert guard.is_selectable(3)
        state = await guard.refresh()
        assert state.kind == PendingKind.UPGRADE
        assert state.pending_tier == 3
        assert not guard.is_selectable(3)
        assert not guard.is_selectable(4)

        await contract.approve_upgrade(INVESTOR)
        await guard.refresh()
        assert guard.approved_tier == Tier.GOLD
        assert not guard.has_any_pending
        assert guard.is_selectable(4) and not guard.is_selectable(3)

    asyncio.run(run())
    print(" PASSED: Approved tier and upgrade")


def test_rejected_upgrade():
    """A rejection that keeps a level is reported as a rejected upgrade."""
    print("\nTEST 6: Rejected Upgrade")
    print("-" * 40)

    from onboarding.pending_guard import KYCStatusSnapshot, PendingRequestGuard
    from backend.chain import SubmissionStatus

    async def run():
        contract, wallet = make_chain()
        await contract.submit_kyc(wallet, 1, "0x" + "11" * 32, 840, FEE)
        await contract.approve_kyc(INVESTOR, 1)
        await contract.request_upgrade(wallet, 2, "0x" + "22" * 32, FEE)
        await contract.reject_upgrade(INVESTOR)

        guard = PendingRequestGuard(contract, INVESTOR)
        state = await guard.refresh()
        assert not state.has_pending
        assert state.was_upgrade_rejected
        assert guard.snapshot.is_rejected

    asyncio.run(run())

    assert not KYCStatusSnapshot(status=SubmissionStatus.REJECTED, level=0).was_upgrade_rejected
    assert KYCStatusSnapshot(status=SubmissionStatus.APPROVED, level=2).approved_tier == 2
    assert KYCStatusSnapshot(status=SubmissionStatus.MANUAL_REVIEW, level=2).approved_tier == 0
    print(" PASSED: Rejected upgrade")
