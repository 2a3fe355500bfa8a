import asyncio

import pytest

from escrow_claims.contracts import VestingInfo
from escrow_claims.db import ClaimLedger, get_session_maker
from escrow_claims.models import ClaimRequest, ClaimState, escrow_id_hex

from conftest import (
    ESCROW_ID, IDRX_ADDRESS, IDRX_ESCROW_ID, NOW, OTHER, RECEIVER, SENDER, USDC_ADDRESS, build_chain,
)


def claim(amount=None, claim_all=False, escrow_id=ESCROW_ID, receiver=None):
    return ClaimRequest(escrow_id=escrow_id, receiver=receiver, amount=amount, claim_all=claim_all)


def states(result):
    return [t.state for t in result.transitions]


async def test_successful_claim_without_approval(funded):
    seen = []
    result = await funded.engine.execute_claim(claim("10"), on_transition=seen.append)

    assert result.success
    assert result.state == ClaimState.CONFIRMED
    assert result.amount == 10_000_000
    assert result.tx_hash.startswith("0x")
    assert result.approval_tx_hash is None
    assert states(result) == [ClaimState.EVALUATING, ClaimState.SUBMITTING, ClaimState.CONFIRMED]
    assert [e.state for e in seen] == states(result)

    [call] = funded.wallet.sent
    assert call.function == "withdrawTokenToCrypto"
    assert call.args == (escrow_id_hex(ESCROW_ID), 10_000_000)
    assert funded.usdc_escrow.receivers[escrow_id_hex(ESCROW_ID)][RECEIVER].withdrawn == 10_000_000


async def test_confirmed_claim_records_backend_event(funded):
    result = await funded.engine.execute_claim(claim("10"))
    [event] = funded.indexer.events
    assert event["event_type"] == "WITHDRAW_FUNDS"
    assert event["tx_hash"] == result.tx_hash
    assert event["event_data"]["amount"] == "10000000"


async def test_async_progress_callback(funded):
    seen = []

    async def on_transition(event):
        await asyncio.sleep(0)
        seen.append(event.state)

    await funded.engine.execute_claim(claim("10"), on_transition=on_transition)
    assert seen[-1] == ClaimState.CONFIRMED


async def test_idrx_claim_all_half_vested():
    chain = build_chain()
    vesting = VestingInfo(enabled=True, start=NOW - 500, duration=1000, end=NOW + 500, chain_time=NOW)
    chain.idrx_escrow.add_room(IDRX_ESCROW_ID, SENDER, IDRX_ADDRESS, {RECEIVER: (100_000, 0, True)}, vesting=vesting)

    result = await chain.engine.execute_claim(claim(claim_all=True, escrow_id=IDRX_ESCROW_ID))
    assert result.success
    assert result.amount == 50_000
    [call] = chain.wallet.sent
    assert call.function == "withdrawIDRXToCrypto"
    assert call.args[1] == 50_000


async def test_ineligible_claim_fails_with_reasons(funded):
    result = await funded.engine.execute_claim(claim("1"))
    assert not result.success
    assert result.state == ClaimState.FAILED
    assert result.error_code == "BelowMinimum"
    assert [r["code"] for r in result.reasons] == ["BelowMinimum"]
    assert states(result) == [ClaimState.EVALUATING, ClaimState.FAILED]
    assert funded.wallet.sent == []


async def test_malformed_escrow_id_fails_before_any_contract_call(funded):
    result = await funded.engine.execute_claim(claim("10", escrow_id="0x123"))
    assert result.error_code == "MalformedEscrowId"
    assert funded.usdc_escrow.calls == []


async def test_claim_is_evaluated_from_fresh_state(funded):
    first = await funded.engine.execute_claim(claim(claim_all=True))
    assert first.amount == 100_000_000
    second = await funded.engine.execute_claim(claim(claim_all=True))
    assert not second.success
    assert "NothingVested" in [r["code"] for r in second.reasons]


async def test_revert_is_classified(funded):
    funded.wallet.revert.add("withdrawTokenToCrypto")
    result = await funded.engine.execute_claim(claim("10"))
    assert not result.success
    assert result.error_code == "WithdrawalReverted"
    assert result.tx_hash is not None
    assert states(result)[-2:] == [ClaimState.SUBMITTING, ClaimState.FAILED]
    assert funded.indexer.events == []


async def test_wallet_rejection_is_classified(funded):
    funded.wallet.reject.add("withdrawTokenToCrypto")
    result = await funded.engine.execute_claim(claim("10"))
    assert result.error_code == "WalletRejected"
    assert result.tx_hash is None


async def test_no_automatic_retries(funded):
    funded.wallet.revert.add("withdrawTokenToCrypto")
    await funded.engine.execute_claim(claim("10"))
    assert len(funded.wallet.sent) == 1


async def test_missing_wallet():
    chain = build_chain(wallet_address=None)
    chain.usdc_escrow.add_room(ESCROW_ID, SENDER, USDC_ADDRESS, {RECEIVER: (100_000_000, 0, True)})
    result = await chain.engine.execute_claim(claim("10", receiver=RECEIVER))
    assert result.error_code == "WalletNotConnected"

    # evaluation still works read-only with an explicit receiver
    evaluation = await chain.engine.evaluate_claim(claim("10", receiver=RECEIVER))
    assert evaluation.eligible


async def test_wallet_must_be_the_receiver(funded):
    result = await funded.engine.execute_claim(claim("10", receiver=OTHER))
    assert result.error_code == "WalletNotConnected"
    assert funded.wallet.sent == []


async def test_not_a_receiver(chain):
    chain.usdc_escrow.add_room(ESCROW_ID, SENDER, USDC_ADDRESS, {OTHER: (100_000_000, 0, True)})
    result = await chain.engine.execute_claim(claim("10"))
    assert result.error_code == "NotActive"


async def test_partial_data_refuses_to_claim(funded):
    funded.usdc_escrow.fail_receivers.add(RECEIVER)
    result = await funded.engine.execute_claim(claim("10"))
    assert result.error_code == "NetworkUnavailable"
    assert funded.wallet.sent == []


async def test_approval_when_the_escrow_requires_it(funded):
    funded.usdc_escrow.withdraw_requires_approval = True
    result = await funded.engine.execute_claim(claim("10"))
    assert result.success
    assert result.approval_tx_hash is not None
    assert states(result) == [
        ClaimState.EVALUATING, ClaimState.AWAITING_APPROVAL, ClaimState.SUBMITTING, ClaimState.CONFIRMED,
    ]
    assert [c.function for c in funded.wallet.sent] == ["approve", "withdrawTokenToCrypto"]


async def test_failed_approval_stops_the_claim(funded):
    funded.usdc_escrow.withdraw_requires_approval = True
    funded.wallet.revert.add("approve")
    result = await funded.engine.execute_claim(claim("10"))
    assert result.error_code == "ApprovalFailed"
    assert [c.function for c in funded.wallet.sent] == ["approve"]
    assert ClaimState.SUBMITTING not in states(result)


class RecordingCache:

    def __init__(self, fail=False):
        self.fail = fail
        self.invalidated = []

    def get(self, escrow_id, max_age):
        return None

    def put(self, record):
        pass

    def invalidate(self, escrow_id):
        if self.fail:
            raise OSError("cache directory is read-only")
        self.invalidated.append(escrow_id)


async def test_cancellation_while_submitting_waits_for_confirmation(funded):
    ledger = funded.engine.coordinator.ledger = ClaimLedger(get_session_maker("sqlite://", create=True))
    cache = funded.engine.reconciler.cache = RecordingCache()
    release = asyncio.Event()
    wallet = funded.wallet
    original = wallet.wait_for_receipt

    async def slow_receipt(tx_hash, timeout=None):
        await release.wait()
        return await original(tx_hash, timeout)

    wallet.wait_for_receipt = slow_receipt

    async def submitted(event):
        if event.state == ClaimState.SUBMITTING:
            asyncio.get_running_loop().call_later(0.01, task.cancel)
            asyncio.get_running_loop().call_later(0.05, release.set)

    task = asyncio.ensure_future(funded.engine.execute_claim(claim("10"), on_transition=submitted))
    with pytest.raises(asyncio.CancelledError):
        await task
    # the broadcast withdrawal still settled before the cancellation surfaced
    assert funded.usdc_escrow.receivers[escrow_id_hex(ESCROW_ID)][RECEIVER].withdrawn == 10_000_000
    assert wallet.pending == {}
    # the cancelled claim is still booked as confirmed
    assert ledger.history()[0]["state"] == "confirmed"
    assert ledger.history()[0]["tx_hash"] == "0x%064x" % 1
    assert cache.invalidated == [escrow_id_hex(ESCROW_ID)]
    assert [e["event_type"] for e in funded.indexer.events] == ["WITHDRAW_FUNDS"]


async def test_ledger_records_terminal_results(funded):
    ledger = ClaimLedger(get_session_maker("sqlite://", create=True))
    funded.engine.coordinator.ledger = ledger

    await funded.engine.execute_claim(claim("10"))
    await funded.engine.execute_claim(claim("1"))

    rows = ledger.history(receiver=RECEIVER)
    assert [r["state"] for r in rows] == ["failed", "confirmed"]
    assert rows[1]["amount"] == "10000000"
    assert rows[1]["token"] == "USDC"
    assert rows[0]["error_code"] == "BelowMinimum"


async def test_cancellation_after_a_reverted_withdrawal_is_booked_as_failed(funded):
    ledger = funded.engine.coordinator.ledger = ClaimLedger(get_session_maker("sqlite://", create=True))
    funded.wallet.revert.add("withdrawTokenToCrypto")
    release = asyncio.Event()
    original = funded.wallet.wait_for_receipt

    async def slow_receipt(tx_hash, timeout=None):
        await release.wait()
        return await original(tx_hash, timeout)

    funded.wallet.wait_for_receipt = slow_receipt

    async def submitted(event):
        if event.state == ClaimState.SUBMITTING:
            asyncio.get_running_loop().call_later(0.01, task.cancel)
            asyncio.get_running_loop().call_later(0.05, release.set)

    task = asyncio.ensure_future(funded.engine.execute_claim(claim("10"), on_transition=submitted))
    with pytest.raises(asyncio.CancelledError):
        await task
    [row] = ledger.history()
    assert row["state"] == "failed"
    assert row["error_code"] == "WithdrawalReverted"
    assert funded.indexer.events == []


# ─────────────────────────────────────────────
# Bookkeeping after a confirmed withdrawal
# ─────────────────────────────────────────────
async def test_failing_progress_callback_does_not_fail_a_confirmed_claim(funded):
    def on_transition(event):
        if event.state == ClaimState.CONFIRMED:
            raise RuntimeError("display went away")

    result = await funded.engine.execute_claim(claim("10"), on_transition=on_transition)
    assert result.success
    assert result.state == ClaimState.CONFIRMED
    assert states(result) == [ClaimState.EVALUATING, ClaimState.SUBMITTING, ClaimState.CONFIRMED]
    assert [c.function for c in funded.wallet.sent] == ["withdrawTokenToCrypto"]
    assert funded.usdc_escrow.receivers[escrow_id_hex(ESCROW_ID)][RECEIVER].withdrawn == 10_000_000


async def test_cache_failure_does_not_fail_a_confirmed_claim(funded):
    ledger = funded.engine.coordinator.ledger = ClaimLedger(get_session_maker("sqlite://", create=True))
    funded.engine.reconciler.cache = RecordingCache(fail=True)

    result = await funded.engine.execute_claim(claim("10"))
    assert result.success
    assert result.state == ClaimState.CONFIRMED
    assert ledger.history()[0]["state"] == "confirmed"
    assert [e["event_type"] for e in funded.indexer.events] == ["WITHDRAW_FUNDS"]


async def test_event_backend_crash_does_not_fail_a_confirmed_claim(funded):
    async def save_event(*args, **kwargs):
        raise ValueError("unexpected response")

    funded.indexer.save_event = save_event
    result = await funded.engine.execute_claim(claim("10"))
    assert result.success
    assert result.state == ClaimState.CONFIRMED


# ─────────────────────────────────────────────
# Concurrent claims
# ─────────────────────────────────────────────
def slow_receipts(wallet, delay=0.01):
    original = wallet.wait_for_receipt

    async def wait_for_receipt(tx_hash, timeout=None):
        await asyncio.sleep(delay)
        return await original(tx_hash, timeout)

    wallet.wait_for_receipt = wait_for_receipt


async def test_concurrent_claims_on_one_escrow_run_one_at_a_time(funded):
    slow_receipts(funded.wallet)
    first, second = await asyncio.gather(
        funded.engine.execute_claim(claim("60")),
        funded.engine.execute_claim(claim("60")),
    )

    assert first.success
    assert not second.success
    assert second.error_code == "AboveMaximum"
    assert [c.function for c in funded.wallet.sent] == ["withdrawTokenToCrypto"]
    assert funded.usdc_escrow.receivers[escrow_id_hex(ESCROW_ID)][RECEIVER].withdrawn == 60_000_000


async def test_claims_on_different_escrows_are_not_serialized(funded):
    funded.usdc_escrow.add_room(IDRX_ESCROW_ID, SENDER, USDC_ADDRESS, {RECEIVER: (100_000_000, 0, True)})
    slow_receipts(funded.wallet)
    results = await asyncio.gather(
        funded.engine.execute_claim(claim("60")),
        funded.engine.execute_claim(claim("60", escrow_id=IDRX_ESCROW_ID)),
    )
    assert all(r.success for r in results)
    assert len(funded.wallet.sent) == 2
