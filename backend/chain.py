"""
Chain boundary - the KYCManager contract and wallet surfaces the workflow consumes.

Provides:
- KYCContract / Wallet interfaces
- On-chain record types (OnChainSubmission, UpgradeRequest, TransactionReceipt)
- Revert-reason mapping to user-facing messages
- In-memory simulations used in demo mode and tests
"""

import asyncio
import hashlib
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)


ZERO_ADDRESS = "0x" + "0" * 40
ZERO_HASH = "0x" + "0" * 64


class SubmissionStatus(IntEnum):
    """On-chain KYC submission status."""
    NONE = 0
    PENDING = 1
    AUTO_VERIFYING = 2
    MANUAL_REVIEW = 3
    APPROVED = 4
    REJECTED = 5
    EXPIRED = 6
    REVOKED = 7

    @property
    def is_pending(self) -> bool:
        return self in (SubmissionStatus.PENDING, SubmissionStatus.AUTO_VERIFYING, SubmissionStatus.MANUAL_REVIEW)


@dataclass
class OnChainSubmission:
    """Result of getSubmission(address)."""
    investor: str = ZERO_ADDRESS
    status: SubmissionStatus = SubmissionStatus.NONE
    level: int = 0
    country_code: int = 0
    document_hash: str = ZERO_HASH
    submitted_at: float = 0.0


@dataclass
class UpgradeRequest:
    """Result of getUpgradeRequest(address)."""
    requested_level: int = 0
    pending: bool = False
    document_hash: str = ZERO_HASH
    requested_at: float = 0.0


@dataclass
class TransactionReceipt:
    tx_hash: str
    success: bool
    block_number: int


# ============================================================================
# ERRORS
# ============================================================================

class ContractError(Exception):
    """A contract call reverted (reason is the custom error name)."""

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason


class WalletError(Exception):
    """The wallet refused or failed to act (user rejection, chain switch, funds)."""

    def __init__(self, message: str, rejected: bool = False):
        super().__init__(message)
        self.rejected = rejected


CONTRACT_ERROR_MESSAGES = [
    ("AlreadySubmitted", "You already have a pending or approved KYC submission"),
    ("InvalidLevel", "Invalid KYC level selected"),
    ("BlockedCountry", "KYC is not available in your country"),
    ("Underage", "You must be at least 18 years old"),
    ("MustHaveApprovedKYC", "You must have an approved KYC before requesting an upgrade"),
    ("CannotDowngrade", "You can only upgrade to a higher tier"),
    ("UpgradeAlreadyPending", "You already have a pending upgrade request"),
    ("NoUpgradePending", "There is no pending upgrade request"),
    ("InsufficientFee", "Insufficient fee. Please ensure you have enough {currency}."),
    ("FeeTransferFailed", "Fee transfer failed. Please try again."),
    ("NotPending", "This KYC request is no longer pending"),
    ("WrongChain", "Please switch your wallet to the correct network"),
    ("insufficient funds", "Insufficient funds for the fee and gas"),
    ("rejected", "Transaction was rejected"),
    ("denied", "Transaction was rejected"),
    ("timeout", "Transaction confirmation timed out. Please check your wallet before retrying."),
]

DEFAULT_CHAIN_ERROR = "Transaction failed. Please try again."


def map_contract_error(error: Exception, currency: str = "ETH") -> str:
    """Map a contract/wallet failure to a short user-facing message."""
    if isinstance(error, WalletError) and error.rejected:
        return "Transaction was rejected"

    text = f"{getattr(error, 'reason', '')} {error}"
    for needle, message in CONTRACT_ERROR_MESSAGES:
        if needle.lower() in text.lower():
            return message.format(currency=currency)
    return DEFAULT_CHAIN_ERROR


def compute_document_hash(
    selfie: Optional[bytes],
    front: Optional[bytes],
    address: str,
    timestamp: Optional[int] = None,
) -> str:
    """
    0x-prefixed SHA-256 digest anchoring the submitted evidence on chain.
    Prefers the selfie, then the document front, then an address/time seed.
    """
    if selfie:
        payload = selfie
    elif front:
        payload = front
    else:
        stamp = timestamp if timestamp is not None else int(time.time() * 1000)
        payload = f"kyc-{address}-{stamp}".encode("utf-8")
    return "0x" + hashlib.sha256(payload).hexdigest()


# ============================================================================
# INTERFACES
# ============================================================================

class Wallet(ABC):
    """Connected user wallet."""

    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    async def get_chain_id(self) -> int:
        ...

    @abstractmethod
    async def switch_chain(self, chain_id: int) -> None:
        """Raises WalletError when the switch is refused or fails."""
        ...

    @abstractmethod
    async def sign_transaction(self, to: str, function: str, args: tuple, value: int) -> str:
        """Ask the user to approve a call. Returns the signer address or raises WalletError."""
        ...


class KYCContract(ABC):
    """KYCManager contract surface."""

    address: str

    @abstractmethod
    async def submit_kyc(self, wallet: Wallet, level: int, document_hash: str, country_code: int, value: int) -> str:
        """Payable first-time request. Returns the transaction hash."""
        ...

    @abstractmethod
    async def request_upgrade(self, wallet: Wallet, new_level: int, document_hash: str, value: int) -> str:
        """Payable upgrade request. Returns the transaction hash."""
        ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt:
        ...

    @abstractmethod
    async def get_submission(self, address: str) -> OnChainSubmission:
        ...

    @abstractmethod
    async def has_upgrade_pending(self, address: str) -> bool:
        ...

    @abstractmethod
    async def get_upgrade_request(self, address: str) -> UpgradeRequest:
        ...

    # Verifier role (backend only)

    @abstractmethod
    async def approve_kyc(self, address: str, level: int) -> str:
        ...

    @abstractmethod
    async def reject_kyc(self, address: str, reason: int = 0) -> str:
        ...

    @abstractmethod
    async def approve_upgrade(self, address: str) -> str:
        ...

    @abstractmethod
    async def reject_upgrade(self, address: str) -> str:
        ...


# ============================================================================
# IN-MEMORY SIMULATIONS
# ============================================================================

class InMemoryWallet(Wallet):
    """Scriptable wallet for demo mode and tests."""

    def __init__(
        self,
        address: str,
        chain_id: int,
        balance_wei: int = 10**18,
        reject_signing: bool = False,
        refuse_switch: bool = False,
    ):
        self._address = address
        self.chain_id = chain_id
        self.balance_wei = balance_wei
        self.reject_signing = reject_signing
        self.refuse_switch = refuse_switch
        self.switch_requests: List[int] = []
        self.signed: List[str] = []

    @property
    def address(self) -> str:
        return self._address

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def switch_chain(self, chain_id: int) -> None:
        self.switch_requests.append(chain_id)
        if self.refuse_switch:
            raise WalletError("User rejected the network switch request", rejected=True)
        self.chain_id = chain_id

    async def sign_transaction(self, to: str, function: str, args: tuple, value: int) -> str:
        if self.reject_signing:
            raise WalletError("User rejected the request", rejected=True)
        if value > self.balance_wei:
            raise WalletError("insufficient funds for gas * price + value")
        self.balance_wei -= value
        self.signed.append(function)
        return self._address


class InMemoryKYCManager(KYCContract):
    """
    KYCManager simulation enforcing the contract's revert rules.

    Initial requests leave the on-chain level at 0 until approved.
    A rejected upgrade flips the status to REJECTED but keeps the
    previously approved level.
    """

    MAX_LEVEL = 4

    def __init__(
        self,
        address: str,
        chain_id: int,
        fee_wei: int,
        blocked_countries: Optional[List[int]] = None,
        confirmation_delay: float = 0.0,
    ):
        self.address = address
        self.chain_id = chain_id
        self.fee_wei = fee_wei
        self.blocked_countries = set(blocked_countries or [])
        self.confirmation_delay = confirmation_delay

        self.submissions: Dict[str, OnChainSubmission] = {}
        self.requested_levels: Dict[str, int] = {}
        self.upgrades: Dict[str, UpgradeRequest] = {}
        self.receipts: Dict[str, TransactionReceipt] = {}
        self.revert_on_confirm: set = set()
        self.calls: List[str] = []

        self._nonce = itertools.count(1)
        self._block = itertools.count(1_000_000)

    # -- helpers --------------------------------------------------------------

    def _next_tx(self, function: str, sender: str) -> str:
        digest = hashlib.sha256(f"{function}:{sender}:{next(self._nonce)}".encode()).hexdigest()
        tx_hash = "0x" + digest
        self.calls.append(function)
        self.receipts[tx_hash] = TransactionReceipt(tx_hash=tx_hash, success=True, block_number=next(self._block))
        logger.info(f"[Chain] {function} from {sender[:10]}... tx={tx_hash[:12]}...")
        return tx_hash

    async def _sign(self, wallet: Wallet, function: str, args: tuple, value: int) -> str:
        if await wallet.get_chain_id() != self.chain_id:
            raise ContractError("WrongChain", f"Wallet is not connected to chain {self.chain_id}")
        sender = await wallet.sign_transaction(self.address, function, args, value)
        return sender.lower()

    def _submission(self, address: str) -> OnChainSubmission:
        return self.submissions.get(address.lower(), OnChainSubmission())

    # -- user calls -----------------------------------------------------------

    async def submit_kyc(self, wallet, level, document_hash, country_code, value):
        if not 1 <= level <= self.MAX_LEVEL:
            raise ContractError("InvalidLevel")
        if value < self.fee_wei:
            raise ContractError("InsufficientFee")
        if country_code in self.blocked_countries:
            raise ContractError("BlockedCountry")

        existing = self._submission(wallet.address)
        if existing.status.is_pending or existing.status == SubmissionStatus.APPROVED:
            raise ContractError("AlreadySubmitted")

        sender = await self._sign(wallet, "submitKYC", (level, document_hash, country_code), value)
        self.submissions[sender] = OnChainSubmission(
            investor=sender,
            status=SubmissionStatus.PENDING,
            level=0,
            country_code=country_code,
            document_hash=document_hash,
            submitted_at=time.time(),
        )
        self.requested_levels[sender] = level
        return self._next_tx("submitKYC", sender)

    async def request_upgrade(self, wallet, new_level, document_hash, value):
        existing = self._submission(wallet.address)
        if existing.status != SubmissionStatus.APPROVED:
            raise ContractError("MustHaveApprovedKYC")
        if new_level > self.MAX_LEVEL:
            raise ContractError("InvalidLevel")
        if new_level <= existing.level:
            raise ContractError("CannotDowngrade")
        if self.upgrades.get(wallet.address.lower(), UpgradeRequest()).pending:
            raise ContractError("UpgradeAlreadyPending")
        if value < self.fee_wei:
            raise ContractError("InsufficientFee")

        sender = await self._sign(wallet, "requestUpgrade", (new_level, document_hash), value)
        self.upgrades[sender] = UpgradeRequest(
            requested_level=new_level,
            pending=True,
            document_hash=document_hash,
            requested_at=time.time(),
        )
        return self._next_tx("requestUpgrade", sender)

    async def wait_for_receipt(self, tx_hash, timeout):
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise ContractError("TransactionNotFound", f"Unknown transaction {tx_hash}")
        if self.confirmation_delay:
            try:
                await asyncio.wait_for(asyncio.sleep(self.confirmation_delay), timeout)
            except asyncio.TimeoutError:
                raise ContractError("timeout", f"Receipt for {tx_hash} not found within {timeout}s")
        if tx_hash in self.revert_on_confirm:
            return TransactionReceipt(tx_hash=tx_hash, success=False, block_number=receipt.block_number)
        return receipt

    # -- views ----------------------------------------------------------------

    async def get_submission(self, address):
        return self._submission(address)

    async def has_upgrade_pending(self, address):
        return self.upgrades.get(address.lower(), UpgradeRequest()).pending

    async def get_upgrade_request(self, address):
        return self.upgrades.get(address.lower(), UpgradeRequest())

    # -- verifier role --------------------------------------------------------

    async def approve_kyc(self, address, level):
        submission = self._submission(address)
        if not submission.status.is_pending:
            raise ContractError("NotPending")
        submission.status = SubmissionStatus.APPROVED
        submission.level = level
        self.requested_levels.pop(address.lower(), None)
        return self._next_tx("approveKYC", address.lower())

    async def reject_kyc(self, address, reason=0):
        submission = self._submission(address)
        if not submission.status.is_pending:
            raise ContractError("NotPending")
        submission.status = SubmissionStatus.REJECTED
        submission.level = 0
        self.requested_levels.pop(address.lower(), None)
        return self._next_tx("rejectKYC", address.lower())

    async def approve_upgrade(self, address):
        request = self.upgrades.get(address.lower())
        if request is None or not request.pending:
            raise ContractError("NoUpgradePending")
        submission = self._submission(address)
        submission.level = request.requested_level
        request.pending = False
        return self._next_tx("approveUpgrade", address.lower())

    async def reject_upgrade(self, address):
        request = self.upgrades.get(address.lower())
        if request is None or not request.pending:
            raise ContractError("NoUpgradePending")
        request.pending = False
        self._submission(address).status = SubmissionStatus.REJECTED
        return self._next_tx("rejectUpgrade", address.lower())
