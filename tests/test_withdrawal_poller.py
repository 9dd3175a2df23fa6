"""
Test draining of the contract withdrawal queues.
"""

from decimal import Decimal

import pytest

from relayer.core.exceptions import TransactionFailedError
from relayer.core.types import AssetClass, TxStatusKind
from relayer.services.fee_calculator import FeeCalculator
from relayer.services.transaction_submitter import TransactionSubmitter
from relayer.services.withdrawal_poller import WithdrawalPoller

from conftest import ALICE, BOB, audit_rows, status


KSM = 10 ** 12


@pytest.fixture
def poller(chain, cursor_store, operation_log, account, pending_quote_withdrawals):
    return WithdrawalPoller(
        chain,
        TransactionSubmitter(chain, account),
        cursor_store,
        operation_log,
        account,
        fee_calculator=FeeCalculator(),
        pending_quote_withdrawals=pending_quote_withdrawals,
        quote_payout_enabled=False,
    )


def by_id_reads(chain, method):
    return [args["id"] for name, args in chain.contract_reads if name == method]


@pytest.mark.asyncio
async def test_processes_backlog_in_order_and_persists_each(chain, cursor_store, poller, pending_quote_withdrawals):
    chain.quote_withdrawals = [(ALICE, KSM)] * 5
    cursor_store.save(cursor_store.current.advance_withdraw(AssetClass.QUOTE, 3))

    saved = []
    original_save = cursor_store.save

    def recording_save(cursor):
        saved.append(cursor.last_quote_withdraw_id)
        original_save(cursor)

    cursor_store.save = recording_save

    processed = await poller.drain(AssetClass.QUOTE)

    assert processed == 2
    assert by_id_reads(chain, "get_withdraw_by_id") == [4, 5]
    assert saved == [4, 5]
    assert [row["number"] for row in pending_quote_withdrawals.entries()] == [4, 5]
    assert cursor_store.load().last_quote_withdraw_id == 5


@pytest.mark.asyncio
async def test_repeated_runs_never_reprocess(chain, cursor_store, poller):
    chain.nft_withdrawals = [(BOB, 1, 1), (BOB, 1, 2)]

    await poller.run()
    await poller.run()

    assert by_id_reads(chain, "get_nft_withdraw_by_id") == [1, 2]
    assert len(chain.transfers("Nft")) == 2
    assert cursor_store.load().last_nft_withdraw_id == 2


@pytest.mark.asyncio
async def test_quote_withdrawal_records_amount_after_fee(chain, poller, pending_quote_withdrawals):
    chain.quote_withdrawals = [(ALICE, KSM), (BOB, 10 ** 11)]

    await poller.run()

    assert pending_quote_withdrawals.entries() == [
        {"number": 1, "address": ALICE, "amount": "980000000000"},
        {"number": 2, "address": BOB, "amount": "90000000000"},
    ]
    assert chain.submitted == []


@pytest.mark.asyncio
async def test_withdrawal_below_fee_advances_without_payout(chain, cursor_store, poller, pending_quote_withdrawals):
    chain.quote_withdrawals = [(ALICE, 5 * 10 ** 9), (BOB, 10 ** 10)]

    await poller.run()

    assert cursor_store.load().last_quote_withdraw_id == 2
    # zero is still a payout, negative is not
    assert pending_quote_withdrawals.entries() == [{"number": 2, "address": BOB, "amount": "0"}]


@pytest.mark.asyncio
async def test_nft_withdrawal_transfers_token(chain, poller, operation_log):
    chain.nft_withdrawals = [(BOB, 3, 14)]

    await poller.run()

    assert chain.transfers("Nft") == [
        ("call", "Nft", "transfer", {"recipient": BOB, "collection_id": 3, "item_id": 14, "value": 0}),
    ]
    rows = audit_rows(operation_log)
    assert rows[-2:] == [
        ["09:05:07", f"NFT withdraw #1: {BOB} withdrawing 3, 14", "START"],
        ["09:05:07", f"NFT withdraw #1: {BOB} withdrawing 3, 14", "END"],
    ]


@pytest.mark.asyncio
async def test_failed_nft_payout_halts_without_advancing(chain, cursor_store, poller, operation_log):
    chain.nft_withdrawals = [(BOB, 3, 14), (BOB, 3, 15)]
    chain.status_script = lambda call: [status(TxStatusKind.USURPED, "0xbad")]

    with pytest.raises(TransactionFailedError):
        await poller.run()

    assert cursor_store.load().last_nft_withdraw_id == 0
    assert len(chain.submitted) == 1
    assert audit_rows(operation_log)[-1][2] == "ERROR: NFT withdraw #1: 5BobAddress withdrawing 3, 14 failed with status usurped: 0xbad"


@pytest.mark.asyncio
async def test_quote_queue_drained_before_nft_queue(chain, poller):
    chain.quote_withdrawals = [(ALICE, KSM)]
    chain.nft_withdrawals = [(BOB, 1, 1)]

    await poller.run()

    order = [name for name, _ in chain.contract_reads if name.endswith("by_id")]
    assert order == ["get_withdraw_by_id", "get_nft_withdraw_by_id"]


@pytest.mark.asyncio
async def test_withdrawals_queued_during_drain_are_picked_up(chain, cursor_store, poller):
    chain.nft_withdrawals = [(BOB, 1, 1)]
    original = chain.read_contract

    async def read_contract(method, args, signer):
        value = await original(method, args, signer)
        if method == "get_nft_withdraw_by_id" and args["id"] == 1:
            chain.nft_withdrawals.append((BOB, 1, 2))
        return value

    chain.read_contract = read_contract

    assert await poller.drain(AssetClass.NFT) == 2
    assert cursor_store.current.last_nft_withdraw_id == 2


@pytest.mark.asyncio
async def test_automatic_quote_payout_when_enabled(chain, poller, cursor_store):
    poller.quote_payout_enabled = True
    chain.quote_withdrawals = [(ALICE, KSM), (BOB, 10 ** 10)]

    await poller.run()

    # the zero payout is recorded but not sent
    assert chain.transfers("Balances") == [
        ("call", "Balances", "transfer_keep_alive", {"dest": ALICE, "value": 980000000000}),
    ]
    assert cursor_store.current.last_quote_withdraw_id == 2


@pytest.mark.asyncio
async def test_automatic_payout_not_repeated_for_recorded_withdrawal(chain, poller, pending_quote_withdrawals, operation_log):
    poller.quote_payout_enabled = True
    chain.quote_withdrawals = [(ALICE, KSM)]
    # left behind by a run that stopped before saving the cursor
    pending_quote_withdrawals.append(1, ALICE, Decimal(980000000000))

    await poller.run()

    assert chain.submitted == []
    assert audit_rows(operation_log)[-1][2] == "ERROR: possible duplicate payout"
