"""
In-memory stand-ins for the chain, wallet and indexer collaborators.

The fakes implement the same async methods as ``EscrowContract``,
``TokenContract``, ``LocalWallet`` and ``IndexerClient`` and keep just enough
state for writes to have visible effects.
"""
import itertools
from types import SimpleNamespace

import pytest

from escrow_claims.contracts import ContractCall, ReceiverDetails, RoomDetails, VestingInfo
from escrow_claims.engine import ClaimEngine
from escrow_claims.errors import EscrowNotFound, NetworkUnavailable
from escrow_claims.indexer import IndexedEscrow
from escrow_claims.models import escrow_id_hex
from escrow_claims.tokens import default_registry

CHAIN_ID = 84532
NOW = 1_700_000_000

SENDER = "0x" + "a1" * 20
RECEIVER = "0x" + "b2" * 20
OTHER = "0x" + "c3" * 20

USDC_ESCROW = "0x" + "e1" * 20
IDRX_ESCROW = "0x" + "e2" * 20

ESCROW_ID = "0x" + "ab" * 32
IDRX_ESCROW_ID = "0x" + "cd" * 32

registry = default_registry()
USDC = registry.get("USDC")
IDRX = registry.get("IDRX")
USDC_ADDRESS = USDC.address_on(CHAIN_ID)
IDRX_ADDRESS = IDRX.address_on(CHAIN_ID)


class FakeToken:

    def __init__(self, symbol, address):
        self.symbol = symbol
        self.address = address
        self.balances = {}
        self.allowances = {}
        self.reads = []

    async def balance_of(self, owner):
        self.reads.append(("balanceOf", owner))
        return self.balances.get(owner.lower(), 0)

    async def allowance(self, owner, spender):
        self.reads.append(("allowance", owner, spender))
        return self.allowances.get((owner.lower(), spender.lower()), 0)

    def approve(self, spender, amount):
        return ContractCall(address=self.address, abi=[], function="approve", args=(spender, int(amount)))


class FakeEscrow:

    def __init__(self, address, family, withdraw_function, tokens=(), withdraw_requires_approval=False):
        self.address = address
        self.family = family
        self.withdraw_function = withdraw_function
        self.withdraw_requires_approval = withdraw_requires_approval
        self.tokens = tuple(tokens)
        self.rooms = {}
        self.receivers = {}
        self.vesting = {}
        self.user_escrows = {}
        self.receiver_escrows = {}
        self.fail = set()
        self.fail_receivers = set()
        self.calls = []

    def add_room(self, escrow_id, sender, token_address, allocations, vesting=None, created_at=NOW - 86400):
        """``allocations`` maps receiver -> (current_allocation, withdrawn, is_active)."""
        key = escrow_id_hex(escrow_id)
        total = sum(a for a, _, _ in allocations.values())
        withdrawn = sum(w for _, w, _ in allocations.values())
        self.rooms[key] = RoomDetails(
            sender=sender,
            token_address=token_address,
            total_allocated=total,
            total_deposited=total,
            total_withdrawn=withdrawn,
            available_balance=total - withdrawn,
            created_at=created_at,
            last_top_up_at=created_at,
            receiver_count=len(allocations),
            active_receiver_count=sum(1 for _, _, active in allocations.values() if active),
            receiver_addresses=list(allocations),
        )
        self.receivers[key] = {
            r: ReceiverDetails(current_allocation=a, withdrawn=w, is_active=active)
            for r, (a, w, active) in allocations.items()
        }
        self.vesting[key] = vesting or VestingInfo(enabled=False, start=0, duration=0, end=0, chain_time=NOW)
        self.user_escrows.setdefault(sender.lower(), []).append(key)
        for r in allocations:
            self.receiver_escrows.setdefault(r.lower(), []).append(key)
        return key

    def _enter(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise ConnectionError(f"{name} unavailable")

    async def get_escrow_details(self, escrow_id):
        self._enter("getEscrowDetails")
        try:
            return self.rooms[escrow_id_hex(escrow_id)]
        except KeyError:
            raise EscrowNotFound(f"escrow not found on {self.family} escrow")

    async def get_escrow_receivers(self, escrow_id):
        self._enter("getEscrowReceivers")
        return list(self.receivers.get(escrow_id_hex(escrow_id), {}))

    async def get_receiver_details(self, escrow_id, receiver):
        self._enter("getReceiverDetails")
        if receiver in self.fail_receivers:
            raise ConnectionError("getReceiverDetails timed out")
        return self.receivers[escrow_id_hex(escrow_id)][receiver]

    async def get_vesting_info(self, escrow_id):
        self._enter("getVestingInfo")
        return self.vesting[escrow_id_hex(escrow_id)]

    async def get_user_escrows(self, sender):
        self._enter("getUserEscrows")
        return list(self.user_escrows.get(sender.lower(), []))

    async def get_receiver_escrows(self, receiver):
        self._enter("getReceiverEscrows")
        return list(self.receiver_escrows.get(receiver.lower(), []))

    def withdraw(self, escrow_id, amount):
        return ContractCall(address=self.address, abi=[], function=self.withdraw_function,
                            args=(escrow_id_hex(escrow_id), int(amount)))

    def top_up(self, escrow_id, amount):
        return ContractCall(address=self.address, abi=[], function="topUpFunds",
                            args=(escrow_id_hex(escrow_id), int(amount)))

    def add_receiver(self, escrow_id, receiver, amount):
        return ContractCall(address=self.address, abi=[], function="addReceiver",
                            args=(escrow_id_hex(escrow_id), receiver, int(amount)))


class FakeWallet:
    """Signs nothing; applies each call's effect to the fakes once its receipt is awaited."""

    def __init__(self, address, contracts):
        self.address = address
        # lower-cased address -> FakeToken / FakeEscrow
        self.contracts = contracts
        self.sent = []
        self.reject = set()
        self.revert = set()
        self.pending = {}
        self._counter = itertools.count(1)

    async def get_address(self):
        return self.address

    async def sign_and_send(self, call):
        if call.function in self.reject:
            raise Exception("MetaMask Tx Signature: User rejected the request.")
        tx_hash = "0x%064x" % next(self._counter)
        self.sent.append(call)
        self.pending[tx_hash] = call
        return tx_hash

    async def wait_for_receipt(self, tx_hash, timeout=None):
        call = self.pending.pop(tx_hash)
        if call.function in self.revert:
            return {"status": 0, "transactionHash": tx_hash}
        self._apply(call)
        return {"status": 1, "transactionHash": tx_hash}

    def _apply(self, call):
        target = self.contracts[call.address.lower()]
        if call.function == "approve":
            spender, amount = call.args
            target.allowances[(self.address.lower(), spender.lower())] = amount
        elif call.function in ("withdrawTokenToCrypto", "withdrawIDRXToCrypto"):
            escrow_id, amount = call.args
            current = target.receivers[escrow_id][self.address]
            target.receivers[escrow_id][self.address] = ReceiverDetails(
                current.current_allocation, current.withdrawn + amount, current.is_active)
        elif call.function == "topUpFunds":
            escrow_id, amount = call.args
            room = target.rooms[escrow_id]
            room.total_deposited += amount
            room.available_balance += amount
        elif call.function == "addReceiver":
            escrow_id, receiver, amount = call.args
            target.receivers[escrow_id][receiver] = ReceiverDetails(amount, 0, True)


class FakeIndexer:

    def __init__(self):
        self.summaries = {}
        self.available = True
        self.events = []
        self.queries = 0
        self.closed = False

    def add(self, summary: IndexedEscrow):
        self.summaries[escrow_id_hex(summary.escrow_id)] = summary

    def _check(self):
        self.queries += 1
        if not self.available:
            raise NetworkUnavailable("indexer request failed: connection refused")

    async def sender_escrows(self, address):
        self._check()
        return [s for s in self.summaries.values() if s.sender.lower() == address.lower()]

    async def receiver_escrows(self, address):
        self._check()
        return [s for s in self.summaries.values() if address.lower() in s.allocations]

    async def escrow_summary(self, escrow_id, family=None):
        self._check()
        return self.summaries.get(escrow_id_hex(escrow_id))

    async def save_event(self, event_type, escrow_id, tx_hash, initiator, token, event_data=None, group_id=""):
        self.events.append({
            "event_type": event_type,
            "escrow_id": escrow_id,
            "tx_hash": tx_hash,
            "initiator": initiator,
            "token": token,
            "event_data": event_data or {},
        })
        return {"success": True}

    async def close(self):
        self.closed = True


def build_chain(wallet_address=RECEIVER, ledger=None, cache=None):
    usdc_token = FakeToken("USDC", USDC_ADDRESS)
    idrx_token = FakeToken("IDRX", IDRX_ADDRESS)
    usdc_escrow = FakeEscrow(USDC_ESCROW, "USDC", "withdrawTokenToCrypto", tokens=("USDC", "USDT"))
    idrx_escrow = FakeEscrow(IDRX_ESCROW, "IDRX", "withdrawIDRXToCrypto", tokens=("IDRX",))
    contracts = {
        c.address.lower(): c for c in (usdc_token, idrx_token, usdc_escrow, idrx_escrow)
    }
    wallet = FakeWallet(wallet_address, contracts) if wallet_address else None
    indexer = FakeIndexer()
    engine = ClaimEngine(
        registry,
        {"USDC": usdc_escrow, "IDRX": idrx_escrow},
        {"USDC": usdc_token, "IDRX": idrx_token},
        wallet=wallet,
        indexer=indexer,
        cache=cache,
        ledger=ledger,
        chain_id=CHAIN_ID,
    )
    return SimpleNamespace(
        engine=engine,
        wallet=wallet,
        indexer=indexer,
        usdc=usdc_token,
        idrx=idrx_token,
        usdc_escrow=usdc_escrow,
        idrx_escrow=idrx_escrow,
    )


@pytest.fixture
def chain():
    return build_chain()


@pytest.fixture
def sender_chain():
    return build_chain(wallet_address=SENDER)


@pytest.fixture
def funded(chain):
    """A USDC escrow paying RECEIVER 100 USDC and OTHER 50 USDC, no vesting."""
    chain.usdc_escrow.add_room(ESCROW_ID, SENDER, USDC_ADDRESS, {
        RECEIVER: (100_000_000, 0, True),
        OTHER: (50_000_000, 0, True),
    })
    return chain
