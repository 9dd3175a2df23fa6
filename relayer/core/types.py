"""
Core types shared by the scanner, the poller and the submitter.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional


class AssetClass(Enum):
    """Kind of asset moved through the vault."""
    QUOTE = "quote"
    NFT = "nft"


@dataclass(frozen=True)
class Cursor:
    """Last fully processed unit of work for every queue."""
    last_scanned_block: int = 0
    last_quote_withdraw_id: int = 0
    last_nft_withdraw_id: int = 0
    # Owned by the quote-chain watcher, carried through unchanged
    last_ledger_block: int = 0
    # Last extrinsic of block last_scanned_block + 1 whose deposit is registered
    registered_extrinsic: Optional[int] = None

    def advance_block(self, height: int) -> "Cursor":
        return replace(self, last_scanned_block=height, registered_extrinsic=None)

    def advance_extrinsic(self, index: int) -> "Cursor":
        return replace(self, registered_extrinsic=index)

    def registered_in(self, block_number: int) -> Optional[int]:
        """Extrinsic progress recorded for ``block_number``, if it is the next block."""
        if block_number == self.last_scanned_block + 1:
            return self.registered_extrinsic
        return None

    def advance_withdraw(self, asset_class: AssetClass, withdraw_id: int) -> "Cursor":
        if asset_class is AssetClass.QUOTE:
            return replace(self, last_quote_withdraw_id=withdraw_id)
        return replace(self, last_nft_withdraw_id=withdraw_id)

    def last_withdraw_id(self, asset_class: AssetClass) -> int:
        if asset_class is AssetClass.QUOTE:
            return self.last_quote_withdraw_id
        return self.last_nft_withdraw_id


@dataclass(frozen=True)
class DepositEvent:
    """A transfer to the custodial address found in a finalized block."""
    source_address: str
    asset_class: AssetClass
    block_number: int
    extrinsic_index: int
    amount: Optional[Decimal] = None
    collection_id: Optional[int] = None
    token_id: Optional[int] = None

    def describe(self) -> str:
        if self.asset_class is AssetClass.QUOTE:
            return f"Quote deposit from {self.source_address} amount {self.amount}"
        return f"NFT deposit from {self.source_address} id ({self.collection_id}, {self.token_id})"


@dataclass(frozen=True)
class QueuedDeposit:
    """Quote deposit accepted out-of-band, waiting for registration."""
    address: str
    amount: Decimal


@dataclass(frozen=True)
class WithdrawalRequest:
    """One entry of a contract withdrawal queue."""
    id: int
    payout_address: str
    asset_class: AssetClass
    amount: Optional[Decimal] = None
    collection_id: Optional[int] = None
    token_id: Optional[int] = None


@dataclass
class ScannedBlock:
    """Deposits extracted from one finalized block."""
    number: int
    deposits: List[DepositEvent] = field(default_factory=list)


@dataclass(frozen=True)
class DecodedExtrinsic:
    """Extrinsic reduced to what deposit detection needs."""
    index: int
    module: str
    call: str
    args: dict
    signer: Optional[str] = None


class TxStatusKind(Enum):
    """Every status an ``author_submitAndWatchExtrinsic`` stream can report."""
    FUTURE = "future"
    READY = "ready"
    BROADCAST = "broadcast"
    IN_BLOCK = "inBlock"
    RETRACTED = "retracted"
    FINALITY_TIMEOUT = "finalityTimeout"
    FINALIZED = "finalized"
    USURPED = "usurped"
    DROPPED = "dropped"
    INVALID = "invalid"


INCLUDED_KINDS = frozenset({TxStatusKind.IN_BLOCK, TxStatusKind.FINALIZED})
FAILED_KINDS = frozenset({
    TxStatusKind.USURPED,
    TxStatusKind.DROPPED,
    TxStatusKind.INVALID,
    TxStatusKind.FINALITY_TIMEOUT,
})


@dataclass(frozen=True)
class TransactionStatus:
    """A single status update for a watched extrinsic."""
    kind: TxStatusKind
    payload: Any = None

    @classmethod
    def from_rpc(cls, result: Any) -> "TransactionStatus":
        """
        Parse the ``result`` field of a subscription notification.

        Unit statuses arrive as bare strings (``"ready"``), the others as a
        single-key object (``{"inBlock": "0x..."}``).
        """
        if isinstance(result, str):
            return cls(TxStatusKind(result))
        if isinstance(result, dict) and len(result) == 1:
            (key, payload), = result.items()
            return cls(TxStatusKind(key), payload)
        raise ValueError(f"Unrecognised extrinsic status: {result!r}")

    @property
    def is_included(self) -> bool:
        return self.kind in INCLUDED_KINDS

    @property
    def is_failure(self) -> bool:
        return self.kind in FAILED_KINDS

    @property
    def is_final(self) -> bool:
        """True once nothing more needs to be observed for this transaction."""
        return self.is_included or self.is_failure

    def __str__(self) -> str:
        if self.payload is None:
            return self.kind.value
        return f"{self.kind.value}: {self.payload}"


class TxState(Enum):
    """Lifecycle of a submitted transaction as seen by the submitter."""
    SUBMITTED = "submitted"
    PENDING = "pending"
    INCLUDED = "included"
    FAILED = "failed"


@dataclass
class PendingTransaction:
    """Tracks one broadcast transaction until it resolves."""
    description: str
    tx_hash: Optional[str] = None
    state: TxState = TxState.SUBMITTED
    last_status: Optional[TransactionStatus] = None
    block_hash: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.state in (TxState.INCLUDED, TxState.FAILED)
