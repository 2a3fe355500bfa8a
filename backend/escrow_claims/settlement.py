"""
Claim settlement - drive one claim from request to a terminal state.

    IDLE -> EVALUATING -> [AWAITING_APPROVAL ->] SUBMITTING -> CONFIRMED | FAILED

Eligibility is always evaluated from a fresh reconciliation. Nothing is retried:
a failed claim reports its classified error and the caller decides what to do.
Claims for the same escrow and receiver run one at a time.
"""
import asyncio
import inspect
import logging
import time
from typing import Optional

from escrow_claims.allowance import SpendOutcome, SpendPlan, WriteLocks
from escrow_claims.contracts import classify_error
from escrow_claims.eligibility import EligibilityEvaluator, EligibilityResult
from escrow_claims.errors import (
    EscrowEngineError, NetworkUnavailable, NotActive, WalletNotConnected,
)
from escrow_claims.models import (
    ClaimProgress, ClaimRequest, ClaimResult, ClaimState, escrow_id_hex, normalize_escrow_id,
)
from escrow_claims.tokens import format_amount

logger = logging.getLogger(__name__)


async def _settle(coro, on_cancelled=None):
    """
    Await a broadcast-and-confirm step to the end.

    Once a transaction may have been broadcast, cancelling the caller must not
    abandon it: the step runs to completion, ``on_cancelled(error)`` records
    how it ended (``error`` is None when it succeeded) and the cancellation is
    re-raised afterwards.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        logger.warning("Claim cancelled while a transaction was in flight; waiting for it to settle")
        try:
            await task
        except Exception as e:
            logger.warning("In-flight transaction failed after cancellation: %s", e)
        if on_cancelled is not None and not task.cancelled():
            await on_cancelled(task.exception())
        raise


class ClaimRun:
    """Progress of a single claim through the state machine."""

    def __init__(self, request: ClaimRequest, on_transition=None):
        self.request = request
        self.on_transition = on_transition
        self.state = ClaimState.IDLE
        self.transitions = []
        self.outcome: Optional[SpendOutcome] = None
        self.receiver = request.receiver
        self.amount = None

    async def move(self, state: ClaimState, message="", tx_hash=None):
        logger.info("Claim %s: %s -> %s %s", self.request.escrow_id, self.state.value, state.value, message)
        self.state = state
        event = ClaimProgress(state=state, message=message, tx_hash=tx_hash)
        self.transitions.append(event)
        if self.on_transition is not None:
            ret = self.on_transition(event)
            if inspect.isawaitable(ret):
                await ret

    @property
    def approval_tx_hash(self):
        return self.outcome.approval_tx_hash if self.outcome else None

    @property
    def spend_tx_hash(self):
        return self.outcome.spend_tx_hash if self.outcome else None


class ClaimSettlementCoordinator:

    def __init__(self, reconciler, orchestrator, evaluator: Optional[EligibilityEvaluator] = None,
                 wallet=None, indexer=None, ledger=None, clock=time.time, locks: Optional[WriteLocks] = None):
        self.reconciler = reconciler
        self.orchestrator = orchestrator
        self.evaluator = evaluator or EligibilityEvaluator()
        self.wallet = wallet
        self.indexer = indexer
        self.ledger = ledger
        self.clock = clock
        self.locks = locks or WriteLocks()

    # ─────────────────────────────────────────────
    # Evaluation (read-only)
    # ─────────────────────────────────────────────
    async def _receiver(self, request):
        if request.receiver:
            return request.receiver
        if self.wallet is None:
            raise WalletNotConnected("a receiver address or a connected wallet is required")
        return await self.wallet.get_address()

    def _now(self, record):
        vesting = record.vesting
        if vesting is not None and vesting.enabled and vesting.chain_time:
            return int(vesting.chain_time)
        return int(self.clock())

    async def _evaluate(self, request: ClaimRequest, run=None):
        escrow_id = normalize_escrow_id(request.escrow_id)
        receiver = await self._receiver(request)
        if run is not None:
            run.receiver = receiver

        record = await self.reconciler.reconcile(escrow_id, family=request.family)
        if record.room.source != "chain" or record.vesting_unavailable:
            raise NetworkUnavailable(
                f"escrow {record.room.escrow_id} could only be partially read; refusing to evaluate a claim on it"
            )

        allocation = record.receiver(receiver)
        if allocation is None:
            raise NotActive(f"{receiver} is not a receiver of escrow {record.room.escrow_id}")
        if allocation.detail_unavailable:
            raise NetworkUnavailable(f"receiver details for {receiver} could not be read from the chain")

        schedule = record.schedule_for(allocation)
        eligibility = self.evaluator.evaluate(record.room, allocation, request, schedule, now=self._now(record))
        return record, receiver, eligibility

    async def evaluate_claim(self, request: ClaimRequest) -> EligibilityResult:
        """Evaluate a claim against fresh chain state without sending anything."""
        _, _, eligibility = await self._evaluate(request)
        return eligibility

    # ─────────────────────────────────────────────
    # Execution
    # ─────────────────────────────────────────────
    async def execute_claim(self, request: ClaimRequest, on_transition=None) -> ClaimResult:
        """
        Run a claim to a terminal state.

        ``on_transition`` (sync or async) receives a :class:`ClaimProgress` for
        every state change. Engine errors never escape; they are reported in the
        returned :class:`ClaimResult`. Cancellation propagates.
        """
        run = ClaimRun(request, on_transition)
        try:
            await run.move(ClaimState.EVALUATING, "reconciling escrow")
            escrow_id = normalize_escrow_id(request.escrow_id)
            run.receiver = await self._receiver(request)
        except EscrowEngineError as e:
            return await self._fail(run, None, e)
        except Exception as e:
            logger.exception("Unexpected failure while starting claim on %s", request.escrow_id)
            return await self._fail(run, None, classify_error(e, "claim"))

        async with self.locks(escrow_id, run.receiver):
            return await self._execute(run)

    async def _execute(self, run: ClaimRun) -> ClaimResult:
        request = run.request
        record = None
        try:
            record, receiver, eligibility = await self._evaluate(request, run)
            run.amount = eligibility.requested

            if not eligibility.eligible:
                return await self._finish(run, record, ClaimResult(
                    success=False,
                    state=ClaimState.FAILED,
                    amount=eligibility.requested,
                    error_code=eligibility.reasons[0].code,
                    message=eligibility.message,
                    reasons=[r.to_dict() for r in eligibility.reasons],
                ))

            if self.wallet is None:
                raise WalletNotConnected()
            sender = await self.wallet.get_address()
            if sender.lower() != receiver.lower():
                raise WalletNotConnected(f"connected wallet {sender} is not the receiver {receiver}")

            plan = await self._plan(record, receiver, eligibility)
            run.outcome = SpendOutcome(plan=plan)

            if plan.needs_approval:
                async def approval_cancelled(error):
                    cause = error or EscrowEngineError("claim cancelled after the approval confirmed")
                    await self._fail(run, record, classify_error(cause, "approve"))

                await run.move(ClaimState.AWAITING_APPROVAL, str(plan.approval_call))
                await _settle(self.orchestrator.run_approval(plan, self.wallet, run.outcome), approval_cancelled)

            async def spend_cancelled(error):
                if error is None:
                    await self._confirmed(run, record, eligibility)
                else:
                    await self._fail(run, record, classify_error(error, "claim"))

            await run.move(ClaimState.SUBMITTING, str(plan.spend_call))
            await _settle(self.orchestrator.run_spend(plan, self.wallet, run.outcome), spend_cancelled)
        except EscrowEngineError as e:
            return await self._fail(run, record, e)
        except Exception as e:
            logger.exception("Unexpected failure while settling claim on %s", request.escrow_id)
            return await self._fail(run, record, classify_error(e, "claim"))

        # the withdrawal is on chain from here on; nothing below may turn it into a failure
        return await self._confirmed(run, record, eligibility)

    async def _plan(self, record, receiver, eligibility) -> SpendPlan:
        contract = self.reconciler.escrows[record.family]
        token = record.room.token
        spend_call = contract.withdraw(record.room.escrow_id, eligibility.requested)
        if contract.withdraw_requires_approval:
            return await self.orchestrator.ensure_spendable(
                receiver, contract.address, token, eligibility.requested,
                spend_call=spend_call, check_balance=False,
            )
        return SpendPlan(
            owner=receiver, spender=contract.address, token=token, required=eligibility.requested,
            balance=None, allowance=None, spend_call=spend_call,
        )

    async def _confirmed(self, run, record, eligibility) -> ClaimResult:
        token = record.room.token
        return await self._finish(run, record, ClaimResult(
            success=True,
            state=ClaimState.CONFIRMED,
            tx_hash=run.spend_tx_hash,
            approval_tx_hash=run.approval_tx_hash,
            amount=eligibility.requested,
            message=f"Claimed {format_amount(eligibility.requested, token)} {token.symbol}",
        ))

    async def _fail(self, run, record, error: EscrowEngineError) -> ClaimResult:
        return await self._finish(run, record, ClaimResult(
            success=False,
            state=ClaimState.FAILED,
            tx_hash=run.spend_tx_hash,
            approval_tx_hash=run.approval_tx_hash,
            amount=run.amount,
            error_code=error.code,
            message=error.message,
            reasons=[error.to_dict()],
        ))

    async def _finish(self, run, record, result: ClaimResult) -> ClaimResult:
        """Report the terminal state; bookkeeping failures are logged, never raised."""
        try:
            await run.move(result.state, result.message or "", result.tx_hash)
        except Exception:
            logger.exception("Progress callback failed on %s", result.state.value)
        result.transitions = list(run.transitions)

        if result.success:
            cache = getattr(self.reconciler, "cache", None)
            if cache is not None:
                try:
                    cache.invalidate(record.room.escrow_id)
                except Exception:
                    logger.exception("Could not invalidate cached escrow %s", record.room.escrow_id)
            await self._save_event(run, record, result)

        if self.ledger is not None:
            try:
                self.ledger.record(
                    run.request, result, receiver=run.receiver,
                    token=record.room.token.symbol if record else None,
                    family=record.family if record else None,
                )
            except Exception:
                logger.exception("Could not record claim result in the ledger")
        return result

    async def _save_event(self, run, record, result):
        if self.indexer is None:
            return
        try:
            await self.indexer.save_event(
                "WITHDRAW_FUNDS",
                escrow_id=escrow_id_hex(record.room.escrow_id),
                tx_hash=result.tx_hash,
                initiator=run.outcome.plan.owner,
                token=record.room.token.symbol,
                event_data={
                    "amount": str(int(result.amount)),
                    "receiver": run.outcome.plan.owner,
                    "family": record.family,
                },
            )
        except Exception as e:
            logger.warning("Claim %s confirmed but the event could not be recorded: %s", result.tx_hash, e)
