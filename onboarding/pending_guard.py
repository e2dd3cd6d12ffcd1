"""
Pending-Request Guard - gates tier selection on the chain's view of outstanding requests.

At most one tier request (initial or upgrade) may be outstanding per account.
State is re-read from the contract on every refresh(); nothing local overrides it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config.tiers import Tier, to_tier
from config.document_schema import PendingKind, PendingRequestState
from backend.chain import KYCContract, SubmissionStatus
from backend.kyc_api_client import KYCApiClient, KYCApiError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KYCStatusSnapshot:
    """Read-only view of an account's on-chain KYC record."""
    status: SubmissionStatus = SubmissionStatus.NONE
    level: int = 0
    country_code: int = 0

    @property
    def approved_tier(self) -> Tier:
        if self.status == SubmissionStatus.APPROVED:
            return to_tier(self.level)
        return Tier.NONE

    @property
    def is_pending(self) -> bool:
        return self.status.is_pending

    @property
    def is_rejected(self) -> bool:
        return self.status == SubmissionStatus.REJECTED

    @property
    def was_upgrade_rejected(self) -> bool:
        """A rejection that left a previously approved level in place."""
        return self.is_rejected and self.level > 0


async def read_kyc_status(contract: KYCContract, address: str) -> KYCStatusSnapshot:
    submission = await contract.get_submission(address)
    return KYCStatusSnapshot(
        status=SubmissionStatus(submission.status),
        level=int(submission.level),
        country_code=int(submission.country_code),
    )


class PendingRequestGuard:
    """Source of truth for whether a new tier request may be started."""

    def __init__(self, contract: KYCContract, address: str, api_client: Optional[KYCApiClient] = None):
        self.contract = contract
        self.address = address
        self.api_client = api_client
        self.snapshot = KYCStatusSnapshot()
        self.state = PendingRequestState()
        self.loaded = False

    @property
    def approved_tier(self) -> Tier:
        return self.snapshot.approved_tier

    @property
    def has_any_pending(self) -> bool:
        return self.state.has_pending

    @property
    def pending_tier(self) -> Optional[int]:
        return self.state.pending_tier

    async def _initial_pending_tier(self) -> Optional[int]:
        """The chain does not expose the requested level of a first-time request."""
        if self.api_client is None:
            return None
        try:
            status = await self.api_client.get_status(self.address)
        except KYCApiError as e:
            logger.warning(f"[Pending Guard] Could not recover pending tier: {e}")
            return None
        return status.requested_level if status.found else None

    async def refresh(self) -> PendingRequestState:
        """Re-read submission and upgrade flags from the contract."""
        self.snapshot = await read_kyc_status(self.contract, self.address)
        upgrade_pending = await self.contract.has_upgrade_pending(self.address)

        if upgrade_pending:
            request = await self.contract.get_upgrade_request(self.address)
            state = PendingRequestState(
                has_pending=True,
                pending_tier=request.requested_level if request.pending else None,
                kind=PendingKind.UPGRADE,
            )
        elif self.snapshot.is_pending:
            state = PendingRequestState(
                has_pending=True,
                pending_tier=await self._initial_pending_tier(),
                kind=PendingKind.INITIAL,
            )
        else:
            state = PendingRequestState()

        state.was_upgrade_rejected = self.snapshot.was_upgrade_rejected
        self.state = state
        self.loaded = True
        logger.info(
            f"[Pending Guard] approved={self.approved_tier.label} status={self.snapshot.status.name} "
            f"pending={state.kind.value} tier={state.pending_tier}"
        )
        return state

    def is_selectable(self, target_tier) -> bool:
        """
        False until the first refresh, while any request is pending
        (the pending tier included), or when target <= approved tier.
        """
        if not self.loaded or self.state.has_pending:
            return False
        return to_tier(target_tier) > self.approved_tier
