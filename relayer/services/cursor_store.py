"""
Durable relayer state kept in small JSON files.

Every write goes through a temp file that is fsynced and then renamed over the
target, so a crash leaves either the old or the new content on disk.
"""

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from relayer.core.exceptions import CorruptStateError, CursorRegressionError
from relayer.core.types import Cursor, QueuedDeposit


logger = structlog.get_logger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """Replace ``path`` with ``data`` serialized as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(temp_path, path)


def _read_json(path: Path) -> Optional[Any]:
    """Read a JSON file, ``None`` when it does not exist."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        raise CorruptStateError(str(path), str(e))


class BlockCursorFile(BaseModel):
    """On-disk shape of the block cursor."""
    model_config = ConfigDict(populate_by_name=True)

    last_ledger_block: int = Field(0, alias="lastScannedLedgerBlock", ge=0)
    last_scanned_block: int = Field(alias="lastNftBlock", ge=0)
    registered_extrinsic: Optional[int] = Field(None, alias="lastRegisteredExtrinsic", ge=0)


class WithdrawalCursorFile(BaseModel):
    """On-disk shape of the withdrawal cursor."""
    model_config = ConfigDict(populate_by_name=True)

    last_quote_withdraw_id: int = Field(alias="lastQuoteWithdraw", ge=0)
    last_nft_withdraw_id: int = Field(alias="lastNftWithdraw", ge=0)


class QueuedDepositEntry(BaseModel):
    address: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)


class CursorStore:
    """
    Sole owner of the block and withdrawal cursors.

    ``save`` is called after every registered deposit, every scanned block
    and every processed withdrawal; a restart resumes at ``cursor + 1``.
    """

    def __init__(self, block_path: Path, withdrawal_path: Path, start_block: int = 0):
        self.block_path = Path(block_path)
        self.withdrawal_path = Path(withdrawal_path)
        self.start_block = start_block
        self._current: Optional[Cursor] = None
        self.logger = logger.bind(service="cursor_store")

    @property
    def current(self) -> Cursor:
        """Last loaded or saved cursor."""
        if self._current is None:
            return self.load()
        return self._current

    def load(self) -> Cursor:
        """
        Load the persisted cursor.

        Missing files start from ``start_block`` and withdrawal id 0.

        Raises:
            CorruptStateError: a file exists but cannot be parsed
        """
        block_raw = _read_json(self.block_path)
        withdrawal_raw = _read_json(self.withdrawal_path)

        try:
            if block_raw is None:
                block = BlockCursorFile(last_scanned_block=self.start_block)
            else:
                block = BlockCursorFile.model_validate(block_raw)
        except ValidationError as e:
            raise CorruptStateError(str(self.block_path), str(e))

        try:
            if withdrawal_raw is None:
                withdrawal = WithdrawalCursorFile(last_quote_withdraw_id=0, last_nft_withdraw_id=0)
            else:
                withdrawal = WithdrawalCursorFile.model_validate(withdrawal_raw)
        except ValidationError as e:
            raise CorruptStateError(str(self.withdrawal_path), str(e))

        cursor = Cursor(
            last_scanned_block=block.last_scanned_block,
            last_quote_withdraw_id=withdrawal.last_quote_withdraw_id,
            last_nft_withdraw_id=withdrawal.last_nft_withdraw_id,
            last_ledger_block=block.last_ledger_block,
            registered_extrinsic=block.registered_extrinsic,
        )
        self._current = cursor
        self.logger.debug("Cursor loaded", cursor=cursor)
        return cursor

    def save(self, cursor: Cursor) -> None:
        """
        Persist ``cursor``. Only the files whose values changed are rewritten.

        Raises:
            CursorRegressionError: any field would move backwards
        """
        current = self._current
        if current is None:
            current = self.load()

        for name in ("last_scanned_block", "last_quote_withdraw_id", "last_nft_withdraw_id"):
            if getattr(cursor, name) < getattr(current, name):
                raise CursorRegressionError(name, getattr(current, name), getattr(cursor, name))

        if (
            cursor.last_scanned_block == current.last_scanned_block
            and current.registered_extrinsic is not None
            and (cursor.registered_extrinsic is None or cursor.registered_extrinsic < current.registered_extrinsic)
        ):
            raise CursorRegressionError(
                "registered_extrinsic", current.registered_extrinsic, cursor.registered_extrinsic
            )

        if (
            cursor.last_scanned_block != current.last_scanned_block
            or cursor.registered_extrinsic != current.registered_extrinsic
            or cursor.last_ledger_block != current.last_ledger_block
            or not self.block_path.exists()
        ):
            block = {
                "lastScannedLedgerBlock": cursor.last_ledger_block,
                "lastNftBlock": cursor.last_scanned_block,
            }
            if cursor.registered_extrinsic is not None:
                block["lastRegisteredExtrinsic"] = cursor.registered_extrinsic
            atomic_write_json(self.block_path, block)

        if (
            cursor.last_quote_withdraw_id != current.last_quote_withdraw_id
            or cursor.last_nft_withdraw_id != current.last_nft_withdraw_id
            or not self.withdrawal_path.exists()
        ):
            atomic_write_json(self.withdrawal_path, {
                "lastQuoteWithdraw": cursor.last_quote_withdraw_id,
                "lastNftWithdraw": cursor.last_nft_withdraw_id,
            })

        self._current = cursor


class QueuedDepositStore:
    """
    Quote deposits accepted out-of-band.

    An external producer appends to the file; this store only ever drops
    entries from the front after they were registered, re-reading the file
    each time so appends made meanwhile are kept.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _raw_entries(self) -> List[Any]:
        raw = _read_json(self.path)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise CorruptStateError(str(self.path), "expected a JSON array")
        return raw

    def load(self) -> List[QueuedDeposit]:
        deposits = []
        for position, entry in enumerate(self._raw_entries()):
            try:
                parsed = QueuedDepositEntry.model_validate(entry)
            except ValidationError as e:
                raise CorruptStateError(str(self.path), f"entry {position}: {e}")
            deposits.append(QueuedDeposit(address=parsed.address, amount=parsed.amount))
        return deposits

    def remove_first(self, count: int = 1) -> None:
        """Drop the first ``count`` entries, which must have been registered."""
        entries = self._raw_entries()
        if count > len(entries):
            raise CorruptStateError(
                str(self.path),
                f"asked to drop {count} entries but only {len(entries)} are queued",
            )
        atomic_write_json(self.path, entries[count:])


class PendingQuoteWithdrawalFile:
    """Append-only record of quote withdrawals awaiting payout."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def entries(self) -> List[dict]:
        raw = _read_json(self.path)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise CorruptStateError(str(self.path), "expected a JSON array")
        return raw

    def append(self, number: int, address: str, amount: Decimal) -> bool:
        """
        Record withdrawal ``number``.

        Returns False when the number is already recorded, which happens when
        a previous run stopped between this write and the cursor save.
        """
        entries = self.entries()
        if any(entry.get("number") == number for entry in entries):
            return False
        entries.append({"number": number, "address": address, "amount": str(amount)})
        atomic_write_json(self.path, entries)
        return True
