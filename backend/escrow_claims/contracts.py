"""
Async web3 adapters for the escrow, ERC20 and wallet collaborators.

Reads return plain records; writes never send anything themselves; they
return a :class:`ContractCall` that a wallet signs and broadcasts.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import httpx
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from escrow_claims.config import (
    ZERO_ADDRESS, GAS_MULTIPLIER, PRIORITY_FEE_GWEI, FALLBACK_BASE_FEE_GWEI,
    FALLBACK_GAS, CONFIRMATION_TIMEOUT,
)
from escrow_claims.errors import (
    EscrowEngineError, NetworkUnavailable, WalletNotConnected, WalletRejected,
    ConfirmationTimeout, WithdrawalReverted, EscrowNotFound,
)
from escrow_claims.models import normalize_escrow_id

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# A minimal ERC20 ABI containing balanceOf, decimals, allowance and approve
# ─────────────────────────────────────────────────────────────────────────────
erc20_abi = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": False,
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    }
]


def _view(name, inputs, outputs):
    return {
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "name": name,
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": "view",
        "type": "function",
    }


def _write(name, inputs):
    return {
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "name": name,
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }


# ─────────────────────────────────────────────────────────────────────────────
# Escrow ABI subset shared by the USDC and IDRX escrow families
# ─────────────────────────────────────────────────────────────────────────────
escrow_abi = [
    _view("getEscrowDetails", [("_escrowId", "bytes32")], [
        ("sender", "address"),
        ("tokenAddress", "address"),
        ("totalAllocatedAmount", "uint256"),
        ("totalDepositedAmount", "uint256"),
        ("totalWithdrawnAmount", "uint256"),
        ("availableBalance", "uint256"),
        ("createdAt", "uint256"),
        ("lastTopUpAt", "uint256"),
        ("receiverCount", "uint256"),
        ("activeReceiverCount", "uint256"),
        ("receiverAddresses", "address[]"),
    ]),
    _view("getEscrowReceivers", [("_escrowId", "bytes32")], [("", "address[]")]),
    _view("getReceiverDetails", [("_escrowId", "bytes32"), ("_receiver", "address")], [
        ("currentAllocation", "uint256"),
        ("withdrawnAmount", "uint256"),
        ("isActive", "bool"),
    ]),
    _view("getVestingInfo", [("_escrowId", "bytes32")], [
        ("isVestingEnabled", "bool"),
        ("vestingStartTime", "uint256"),
        ("vestingDuration", "uint256"),
        ("vestingEndTime", "uint256"),
        ("currentTime", "uint256"),
    ]),
    _view("getUserEscrows", [("_user", "address")], [("", "bytes32[]")]),
    _view("getReceiverEscrows", [("_receiver", "address")], [("", "bytes32[]")]),
    _write("withdrawTokenToCrypto", [("_escrowId", "bytes32"), ("_amount", "uint256")]),
    _write("withdrawIDRXToCrypto", [("_escrowId", "bytes32"), ("_amount", "uint256")]),
    _write("topUpFunds", [("_escrowId", "bytes32"), ("_amount", "uint256")]),
    _write("addReceiver", [("_escrowId", "bytes32"), ("_receiver", "address"), ("_amount", "uint256")]),
]


@dataclass
class ContractCall:
    """An unsigned contract write, ready for a wallet to sign and send."""
    address: str
    abi: list
    function: str
    args: Tuple = ()
    description: str = ""
    value: int = 0

    def __str__(self):
        return self.description or f"{self.function}{self.args}"


@dataclass
class RoomDetails:
    sender: str
    token_address: str
    total_allocated: int
    total_deposited: int
    total_withdrawn: int
    available_balance: int
    created_at: int
    last_top_up_at: int
    receiver_count: int
    active_receiver_count: int
    receiver_addresses: List[str] = field(default_factory=list)


@dataclass
class ReceiverDetails:
    current_allocation: int
    withdrawn: int
    is_active: bool


@dataclass
class VestingInfo:
    enabled: bool
    start: int
    duration: int
    end: int
    chain_time: int


def connect(rpc_url):
    """Build an async web3 client for ``rpc_url``."""
    logger.debug("Connecting to %s", rpc_url)
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))


def classify_error(exc, action="transaction"):
    """Map a web3/transport exception to an engine error."""
    if isinstance(exc, EscrowEngineError):
        return exc
    if isinstance(exc, ContractLogicError):
        reason = getattr(exc, "message", None) or str(exc) or "transaction failed"
        return WithdrawalReverted(f"{action} reverted: {reason}", reason=reason)
    if isinstance(exc, TimeExhausted):
        return ConfirmationTimeout(f"{action} was not confirmed in time")
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, OSError)):
        return NetworkUnavailable(f"{action} failed: {exc}")
    message = str(exc).lower()
    if "user rejected" in message or "user denied" in message:
        return WalletRejected()
    return WithdrawalReverted(f"{action} failed: {exc}" if str(exc) else None)


class TokenContract:
    """ERC20 reads and approve-call builder."""

    def __init__(self, w3, address, symbol=None):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.symbol = symbol
        self.contract = w3.eth.contract(address=self.address, abi=erc20_abi)

    async def balance_of(self, owner) -> int:
        try:
            return await self.contract.functions.balanceOf(Web3.to_checksum_address(owner)).call()
        except Exception as e:
            raise classify_error(e, f"{self.symbol or 'token'} balanceOf") from e

    async def allowance(self, owner, spender) -> int:
        try:
            return await self.contract.functions.allowance(
                Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
            ).call()
        except Exception as e:
            raise classify_error(e, f"{self.symbol or 'token'} allowance") from e

    async def decimals(self) -> int:
        return await self.contract.functions.decimals().call()

    def approve(self, spender, amount) -> ContractCall:
        return ContractCall(
            address=self.address,
            abi=erc20_abi,
            function="approve",
            args=(Web3.to_checksum_address(spender), int(amount)),
            description=f"approve {int(amount)} {self.symbol or ''} for {spender}".strip(),
        )


class EscrowContract:
    """One escrow contract family (e.g. the USDC or IDRX escrow)."""

    def __init__(self, w3, address, family="USDC", withdraw_function="withdrawTokenToCrypto",
                 withdraw_requires_approval=False, tokens=()):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.family = family
        self.withdraw_function = withdraw_function
        self.withdraw_requires_approval = withdraw_requires_approval
        self.tokens = tuple(tokens)
        self.contract = w3.eth.contract(address=self.address, abi=escrow_abi)

    @classmethod
    def from_config(cls, w3, family, settings):
        return cls(
            w3,
            settings["address"],
            family=family,
            withdraw_function=settings.get("withdraw_function", "withdrawTokenToCrypto"),
            withdraw_requires_approval=settings.get("withdraw_requires_approval", False),
            tokens=settings.get("tokens", ()),
        )

    async def get_escrow_details(self, escrow_id) -> RoomDetails:
        escrow_id = normalize_escrow_id(escrow_id)
        result = await self.contract.functions.getEscrowDetails(escrow_id).call()
        details = RoomDetails(
            sender=result[0],
            token_address=result[1],
            total_allocated=result[2],
            total_deposited=result[3],
            total_withdrawn=result[4],
            available_balance=result[5],
            created_at=result[6],
            last_top_up_at=result[7],
            receiver_count=result[8],
            active_receiver_count=result[9],
            receiver_addresses=list(result[10]) if len(result) > 10 else [],
        )
        # An escrow that was never created reads back as a zeroed struct
        if details.sender == ZERO_ADDRESS:
            raise EscrowNotFound(f"escrow {escrow_id.hex()} not found on {self.family} escrow")
        return details

    async def get_escrow_receivers(self, escrow_id) -> List[str]:
        escrow_id = normalize_escrow_id(escrow_id)
        return list(await self.contract.functions.getEscrowReceivers(escrow_id).call())

    async def get_receiver_details(self, escrow_id, receiver) -> ReceiverDetails:
        escrow_id = normalize_escrow_id(escrow_id)
        allocation, withdrawn, active = await self.contract.functions.getReceiverDetails(
            escrow_id, Web3.to_checksum_address(receiver)
        ).call()
        return ReceiverDetails(current_allocation=allocation, withdrawn=withdrawn, is_active=active)

    async def get_vesting_info(self, escrow_id) -> VestingInfo:
        escrow_id = normalize_escrow_id(escrow_id)
        enabled, start, duration, end, chain_time = await self.contract.functions.getVestingInfo(escrow_id).call()
        return VestingInfo(enabled=enabled, start=start, duration=duration, end=end, chain_time=chain_time)

    async def get_user_escrows(self, sender) -> List[str]:
        ids = await self.contract.functions.getUserEscrows(Web3.to_checksum_address(sender)).call()
        return ["0x" + bytes(i).hex() for i in ids]

    async def get_receiver_escrows(self, receiver) -> List[str]:
        ids = await self.contract.functions.getReceiverEscrows(Web3.to_checksum_address(receiver)).call()
        return ["0x" + bytes(i).hex() for i in ids]

    def _call(self, function, args, description):
        return ContractCall(address=self.address, abi=escrow_abi, function=function, args=args,
                            description=description)

    def withdraw(self, escrow_id, amount) -> ContractCall:
        escrow_id = normalize_escrow_id(escrow_id)
        return self._call(self.withdraw_function, (bytes(escrow_id), int(amount)),
                          f"{self.withdraw_function}({int(amount)})")

    def top_up(self, escrow_id, amount) -> ContractCall:
        escrow_id = normalize_escrow_id(escrow_id)
        return self._call("topUpFunds", (bytes(escrow_id), int(amount)), f"topUpFunds({int(amount)})")

    def add_receiver(self, escrow_id, receiver, amount) -> ContractCall:
        escrow_id = normalize_escrow_id(escrow_id)
        return self._call("addReceiver", (bytes(escrow_id), Web3.to_checksum_address(receiver), int(amount)),
                          f"addReceiver({receiver}, {int(amount)})")


class LocalWallet:
    """
    Wallet backed by a local private key.

    Builds EIP-1559 transactions the same way for every call: estimated gas
    times a safety multiplier, latest base fee plus a fixed priority fee.
    """

    def __init__(self, w3, account, confirmation_timeout=CONFIRMATION_TIMEOUT):
        self.w3 = w3
        self.account = account
        self.confirmation_timeout = confirmation_timeout

    @classmethod
    def from_key(cls, w3, private_key, **kwargs):
        if not private_key:
            raise WalletNotConnected("no EVM_PRIVATE_KEY configured")
        return cls(w3, w3.eth.account.from_key(private_key), **kwargs)

    async def get_address(self) -> str:
        if self.account is None:
            raise WalletNotConnected()
        return self.account.address

    async def _fees(self):
        latest_block = await self.w3.eth.get_block("latest")
        base_fee = latest_block.get("baseFeePerGas", self.w3.to_wei(FALLBACK_BASE_FEE_GWEI, "gwei"))
        priority_fee = self.w3.to_wei(PRIORITY_FEE_GWEI, "gwei")
        return priority_fee, base_fee + priority_fee

    async def sign_and_send(self, call: ContractCall) -> str:
        address = await self.get_address()
        contract = self.w3.eth.contract(address=call.address, abi=call.abi)
        fn = getattr(contract.functions, call.function)(*call.args)

        tx = await fn.build_transaction({
            "from": address,
            "value": call.value,
            "nonce": await self.w3.eth.get_transaction_count(address, "pending"),
        })
        try:
            gas_est = await self.w3.eth.estimate_gas(tx)
        except ContractLogicError:
            raise
        except Exception as e:
            logger.warning("Gas estimate for %s failed: %s", call.function, e)
            gas_est = FALLBACK_GAS

        priority_fee, max_fee = await self._fees()
        tx.update({
            "gas": int(gas_est * GAS_MULTIPLIER),
            "maxPriorityFeePerGas": priority_fee,
            "maxFeePerGas": max_fee,
            "type": 2,
        })
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Sent %s -> %s", call, tx_hex)
        return tx_hex

    async def wait_for_receipt(self, tx_hash, timeout=None) -> dict:
        receipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=timeout or self.confirmation_timeout
        )
        return dict(receipt)
