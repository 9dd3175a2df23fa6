"""
Main entry point for the relayer.

One invocation performs a single pass: scan finalized blocks for deposits,
drain the withdrawal queues, flush queued deposits, then exit. It is meant to
be started on a schedule.
"""

import asyncio
import signal
import sys
from typing import Any, Optional

import structlog

from relayer.core.config import StateConfig, settings
from relayer.core.exceptions import (
    ConfigurationError,
    ConnectionLostError,
    CorruptStateError,
    CursorRegressionError,
    RelayerException,
    RunCancelledError,
    TransactionFailedError,
    TransactionTimeoutError,
    TransactionUnknownError,
)
from relayer.core.logging import setup_logging
from relayer.indexer.block_scanner import BlockScanner
from relayer.services.chain_connection import ChainConnection, SubstrateConnection, load_account
from relayer.services.cursor_store import CursorStore, PendingQuoteWithdrawalFile, QueuedDepositStore
from relayer.services.deposit_registrar import DepositRegistrar
from relayer.services.fee_calculator import FeeCalculator
from relayer.services.operation_log import OperationLog, error_status
from relayer.services.transaction_submitter import TransactionSubmitter
from relayer.services.withdrawal_poller import WithdrawalPoller


logger = structlog.get_logger(__name__)

# Errors the scan retry loop must not paper over
NOT_RETRIED = (
    ConfigurationError,
    ConnectionLostError,
    CorruptStateError,
    CursorRegressionError,
    RunCancelledError,
    TransactionFailedError,
    TransactionTimeoutError,
    TransactionUnknownError,
)


class Relayer:
    """
    Owns one run: the ledger connection, the cursors and the three phases.

    A lost connection or a stop request records a cancellation error that every
    component checks before starting its next unit of work.
    """

    def __init__(
        self,
        connection: ChainConnection,
        cursor_store: CursorStore,
        operation_log: OperationLog,
        queued_deposits: QueuedDepositStore,
        pending_quote_withdrawals: PendingQuoteWithdrawalFile,
        account: Any = None,
        custodial_address: Optional[str] = None,
        fee_calculator: Optional[FeeCalculator] = None,
        retry_delay: Optional[float] = None,
        max_scan_retries: Optional[int] = None,
        tx_timeout: Optional[float] = None,
    ):
        self.connection = connection
        self.cursor_store = cursor_store
        self.operation_log = operation_log
        self.queued_deposits = queued_deposits
        self.pending_quote_withdrawals = pending_quote_withdrawals
        self.account = account
        self.custodial_address = custodial_address
        self.fee_calculator = fee_calculator or FeeCalculator.from_settings()
        self.retry_delay = settings.retry_delay_seconds if retry_delay is None else retry_delay
        self.max_scan_retries = settings.max_scan_retries if max_scan_retries is None else max_scan_retries
        self.tx_timeout = settings.tx_timeout_seconds if tx_timeout is None else tx_timeout

        self._cancel_error: Optional[RelayerException] = None
        self.logger = logger.bind(service="relayer")

    def _on_disconnect(self, reason: str) -> None:
        self.operation_log.record(f"disconnected: {reason}", error_status("connection lost"))
        self._cancel(ConnectionLostError(reason))

    def request_stop(self, reason: str = "stop requested") -> None:
        self.logger.info("Stop requested", reason=reason)
        self._cancel(RunCancelledError(reason))

    def _cancel(self, error: RelayerException) -> None:
        if self._cancel_error is None:
            self._cancel_error = error

    def checkpoint(self) -> None:
        """Raise if the run was cancelled. Called before each unit of work."""
        if self._cancel_error is not None:
            raise self._cancel_error

    async def run(self) -> None:
        self.cursor_store.load()

        async with self.connection:
            self.connection.add_disconnect_listener(self._on_disconnect)

            if self.account is None:
                self.account = load_account(settings.admin_seed, settings.ss58_format)
            custodial_address = self.custodial_address or settings.admin_address or self.account.ss58_address

            submitter = TransactionSubmitter(self.connection, self.account, timeout=self.tx_timeout)
            registrar = DepositRegistrar(
                self.connection,
                submitter,
                self.operation_log,
                queued_deposits=self.queued_deposits,
            )
            scanner = BlockScanner(
                self.connection,
                self.cursor_store,
                self.operation_log,
                custodial_address,
                checkpoint=self.checkpoint,
            )
            poller = WithdrawalPoller(
                self.connection,
                submitter,
                self.cursor_store,
                self.operation_log,
                self.account,
                fee_calculator=self.fee_calculator,
                pending_quote_withdrawals=self.pending_quote_withdrawals,
                checkpoint=self.checkpoint,
            )

            await self.scan_with_retry(scanner, registrar)

            self.checkpoint()
            await poller.run()

            self.checkpoint()
            flushed = await registrar.flush_queued_deposits()
            if flushed:
                self.logger.info("Queued deposits registered", count=flushed)

        self.logger.info("Relayer run complete", cursor=self.cursor_store.current)

    async def scan_with_retry(self, scanner: BlockScanner, registrar: DepositRegistrar) -> int:
        """
        Run the block scan phase, retrying transient failures after a fixed
        delay. Each attempt resumes from the persisted block cursor.
        """
        attempt = 0
        while True:
            self.checkpoint()
            try:
                return await scanner.run(registrar)
            except NOT_RETRIED:
                raise
            except Exception as e:
                attempt += 1
                self.logger.error(
                    "Block scan failed",
                    error=str(e),
                    attempt=attempt,
                    last_scanned=self.cursor_store.current.last_scanned_block,
                )
                self.operation_log.record("Block scan", error_status(e))
                if self.max_scan_retries and attempt >= self.max_scan_retries:
                    raise
                await asyncio.sleep(self.retry_delay)


def create_relayer() -> Relayer:
    """Wire a relayer from settings."""
    connection = SubstrateConnection(
        url=settings.node_ws_url,
        contract_address=settings.market_contract_address,
        metadata_file=settings.market_metadata_file,
        ss58_format=settings.ss58_format,
        type_registry_preset=settings.type_registry_preset,
    )
    return Relayer(
        connection=connection,
        cursor_store=CursorStore(
            StateConfig.path_for(settings.block_cursor_file),
            StateConfig.path_for(settings.withdrawal_cursor_file),
            start_block=settings.start_block,
        ),
        operation_log=OperationLog(settings.state_dir, settings.operations_log_prefix),
        queued_deposits=QueuedDepositStore(StateConfig.path_for(settings.queued_deposits_file)),
        pending_quote_withdrawals=PendingQuoteWithdrawalFile(
            StateConfig.path_for(settings.quote_withdrawals_file)
        ),
    )


async def main() -> int:
    """Run one relayer pass. Returns the process exit code."""
    setup_logging()
    relayer = create_relayer()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, relayer.request_stop, f"signal {signum}")
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    try:
        await relayer.run()
    except RelayerException as e:
        logger.error("Relayer run failed", error=e.message, code=e.code, details=e.details)
        relayer.operation_log.record("Relayer run", error_status(e.message))
        return 1
    except Exception as e:
        logger.exception("Relayer run crashed", error=str(e))
        relayer.operation_log.record("Relayer run", error_status(e))
        return 1

    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
