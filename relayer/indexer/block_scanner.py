"""
Finalized block scanner for deposits sent to the custodial address.
"""

from decimal import Decimal
from typing import AsyncIterator, Callable, Iterable, List, Optional

import structlog

from relayer.core.config import settings
from relayer.core.types import AssetClass, DecodedExtrinsic, DepositEvent, ScannedBlock
from relayer.services.chain_connection import ChainConnection
from relayer.services.cursor_store import CursorStore
from relayer.services.deposit_registrar import DepositRegistrar
from relayer.services.operation_log import END, RECEIVED, START, OperationLog


logger = structlog.get_logger(__name__)

QUOTE_TRANSFER_CALLS = frozenset({"transfer", "transfer_keep_alive", "transfer_allow_death"})
NFT_TRANSFER_CALLS = frozenset({"transfer"})


def extract_deposits(
    extrinsics: Iterable[DecodedExtrinsic],
    block_number: int,
    custodial_address: str,
    quote_module: str = "Balances",
    nft_module: str = "Nft",
) -> List[DepositEvent]:
    """
    Select the transfers to ``custodial_address`` among a block's extrinsics.

    The destination is the first call argument for both pallets; the amount
    (quote) or collection and token ids (NFT) follow it. Unsigned extrinsics
    have no depositor and are skipped.
    """
    deposits = []
    for extrinsic in extrinsics:
        if not extrinsic.signer:
            continue
        args = list(extrinsic.args.values())
        if not args or args[0] != custodial_address:
            continue

        module = extrinsic.module.lower()
        if module == quote_module.lower() and extrinsic.call in QUOTE_TRANSFER_CALLS:
            deposits.append(DepositEvent(
                source_address=extrinsic.signer,
                asset_class=AssetClass.QUOTE,
                block_number=block_number,
                extrinsic_index=extrinsic.index,
                amount=Decimal(int(args[1])),
            ))
        elif module == nft_module.lower() and extrinsic.call in NFT_TRANSFER_CALLS:
            deposits.append(DepositEvent(
                source_address=extrinsic.signer,
                asset_class=AssetClass.NFT,
                block_number=block_number,
                extrinsic_index=extrinsic.index,
                collection_id=int(args[1]),
                token_id=int(args[2]),
            ))
    return deposits


class BlockScanner:
    """
    Walks finalized blocks one at a time.

    ``scan`` is an async generator: the cursor for a block is saved when the
    consumer asks for the next block, i.e. after it handled the deposits of
    the current one. If the consumer fails, the cursor stays on the last block
    it fully handled.
    """

    def __init__(
        self,
        connection: ChainConnection,
        cursor_store: CursorStore,
        operation_log: OperationLog,
        custodial_address: str,
        quote_module: Optional[str] = None,
        nft_module: Optional[str] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ):
        self.connection = connection
        self.cursor_store = cursor_store
        self.operation_log = operation_log
        self.custodial_address = custodial_address
        self.quote_module = quote_module or settings.quote_transfer_module
        self.nft_module = nft_module or settings.nft_transfer_module
        self.checkpoint = checkpoint
        self.logger = logger.bind(service="block_scanner")

    async def read_block(self, number: int) -> ScannedBlock:
        raw_extrinsics = await self.connection.get_block(number)
        failed = await self.connection.failed_extrinsics(number)
        if failed:
            self.logger.debug("Skipping failed extrinsics", block_number=number, indices=sorted(failed))
        extrinsics = [
            self.connection.decode_extrinsic(raw, index)
            for index, raw in enumerate(raw_extrinsics)
            if index not in failed
        ]
        deposits = extract_deposits(
            extrinsics,
            number,
            self.custodial_address,
            self.quote_module,
            self.nft_module,
        )
        return ScannedBlock(number=number, deposits=deposits)

    async def scan(self, from_block: int, to_block: int) -> AsyncIterator[ScannedBlock]:
        """
        Yield the deposits of every block in ``[from_block, to_block]``.

        ``to_block`` is clamped to the finalized head: blocks above it can
        still be reorganized away.
        """
        finalized = await self.connection.get_finalized_head()
        if to_block > finalized:
            self.logger.warning("Scan range clamped to finalized head", requested=to_block, finalized=finalized)
            to_block = finalized

        for number in range(from_block, to_block + 1):
            if self.checkpoint:
                self.checkpoint()

            self.logger.debug("Scanning block", block_number=number)
            self.operation_log.record(f"Handling block {number}", START)
            block = await self.read_block(number)
            for deposit in block.deposits:
                self.operation_log.record(deposit.describe(), RECEIVED)

            yield block

            if number > self.cursor_store.current.last_scanned_block:
                self.cursor_store.save(self.cursor_store.current.advance_block(number))
            self.operation_log.record(f"Handling block {number}", END)

    async def run(self, registrar: DepositRegistrar) -> int:
        """
        Scan from the cursor to the finalized head, registering each deposit
        before the block it came from is checkpointed.

        The extrinsic index of every registered deposit is saved as well, so a
        block that is scanned again after a partial run skips the deposits
        already registered.

        Returns:
            Number of deposits registered
        """
        start = self.cursor_store.current.last_scanned_block + 1
        finalized = await self.connection.get_finalized_head()
        if start > finalized:
            self.logger.debug("No new finalized blocks", last_scanned=start - 1, finalized=finalized)
            return 0

        self.logger.info("Scanning blocks", from_block=start, to_block=finalized)
        registered = 0
        async for block in self.scan(start, finalized):
            done = self.cursor_store.current.registered_in(block.number)
            for deposit in block.deposits:
                if done is not None and deposit.extrinsic_index <= done:
                    self.logger.info(
                        "Deposit already registered",
                        block_number=block.number,
                        extrinsic_index=deposit.extrinsic_index,
                    )
                    continue
                await registrar.register(deposit)
                self.cursor_store.save(self.cursor_store.current.advance_extrinsic(deposit.extrinsic_index))
                registered += 1
        return registered
