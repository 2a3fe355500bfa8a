"""
Token registry and amount codec.

Human amounts are decimal strings (or ``Decimal``) as a user types them;
base-unit amounts are integers in the token's smallest unit and are tagged
with :class:`BaseUnits`. The two only meet through :func:`to_base_units` and
:func:`to_human_units`.
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Union

from escrow_claims.config import deployments, ZERO_ADDRESS
from escrow_claims.errors import UnknownToken, InvalidAmount

_AMOUNT_RE = re.compile(r"^(\d*)(?:\.(\d*))?$")


class BaseUnits(int):
    """An integer amount in a token's smallest unit."""

    def __new__(cls, value=0):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidAmount(f"base-unit amount must be an integer, got {value!r}")
        if value < 0:
            raise InvalidAmount(f"base-unit amount cannot be negative: {value}")
        return super().__new__(cls, value)

    def __repr__(self):
        return f"BaseUnits({int(self)})"


@dataclass(frozen=True)
class TokenDescriptor:
    symbol: str
    name: str
    decimals: int
    display_decimals: int
    addresses: Dict[int, str] = field(default_factory=dict, compare=False, hash=False)
    native: bool = False

    @property
    def display_symbol(self):
        return self.symbol

    def address_on(self, chain_id: int) -> str:
        try:
            return self.addresses[int(chain_id)]
        except KeyError:
            raise UnknownToken(f"{self.symbol} is not deployed on chain {chain_id}", token=self.symbol)

    @property
    def unit(self) -> int:
        return 10 ** self.decimals


TokenLike = Union[TokenDescriptor, str]


class TokenRegistry:
    """Static lookup of token descriptors by symbol or by (chain, address)."""

    def __init__(self, descriptors):
        self._by_symbol = {}
        self._by_address = {}
        for token in descriptors:
            key = token.symbol.upper()
            if key in self._by_symbol:
                raise ValueError(f"duplicate token symbol {token.symbol}")
            self._by_symbol[key] = token
            for chain_id, address in token.addresses.items():
                if address and address != ZERO_ADDRESS:
                    self._by_address[(int(chain_id), address.lower())] = token

    @classmethod
    def from_config(cls, data=None):
        data = deployments if data is None else data
        descriptors = []
        for entry in data["tokens"]:
            descriptors.append(TokenDescriptor(
                symbol=entry["symbol"],
                name=entry.get("name", entry["symbol"]),
                decimals=int(entry["decimals"]),
                display_decimals=int(entry.get("display_decimals", entry["decimals"])),
                addresses={int(k): v for k, v in entry.get("addresses", {}).items()},
                native=bool(entry.get("native", False)),
            ))
        return cls(descriptors)

    def __iter__(self):
        return iter(self._by_symbol.values())

    def __len__(self):
        return len(self._by_symbol)

    def __contains__(self, token):
        try:
            self.get(token)
        except UnknownToken:
            return False
        return True

    def get(self, token: TokenLike, chain_id: Optional[int] = None) -> TokenDescriptor:
        """Resolve a descriptor, symbol or contract address to a descriptor."""
        if isinstance(token, TokenDescriptor):
            if token.symbol.upper() not in self._by_symbol:
                raise UnknownToken(f"unknown token {token.symbol}", token=token.symbol)
            return token
        if not isinstance(token, str) or not token:
            raise UnknownToken(f"unknown token {token!r}", token=token)

        if token.lower().startswith("0x"):
            return self.by_address(token, chain_id)

        found = self._by_symbol.get(token.upper())
        if found is None:
            raise UnknownToken(f"unknown token {token}", token=token)
        return found

    def by_address(self, address: str, chain_id: Optional[int] = None) -> TokenDescriptor:
        address = address.lower()
        if chain_id is not None:
            found = self._by_address.get((int(chain_id), address))
        else:
            found = next((t for (_, a), t in self._by_address.items() if a == address), None)
        if found is None:
            raise UnknownToken(f"no registered token at {address}", token=address, chain_id=chain_id)
        return found

    def decimals_for(self, token: TokenLike, chain_id: Optional[int] = None) -> int:
        return self.get(token, chain_id).decimals

    def for_chain(self, chain_id: int):
        return [t for t in self if int(chain_id) in t.addresses]


_default_registry = None


def default_registry() -> TokenRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = TokenRegistry.from_config()
    return _default_registry


# ─────────────────────────────────────────────
# Amount codec
# ─────────────────────────────────────────────
def _resolve(token, registry):
    if isinstance(token, TokenDescriptor) and registry is None:
        return token
    return (registry or default_registry()).get(token)


def parse_human_amount(value) -> Decimal:
    """Parse a user-entered amount into a non-negative ``Decimal``."""
    if isinstance(value, bool):
        raise InvalidAmount(f"invalid amount {value!r}")
    if isinstance(value, int):
        value = str(value)
    if isinstance(value, Decimal):
        if not value.is_finite() or value < 0:
            raise InvalidAmount(f"invalid amount {value}")
        return value
    if not isinstance(value, str):
        raise InvalidAmount(f"amount must be a decimal string, got {type(value).__name__}")

    text = value.strip().replace("_", "")
    match = _AMOUNT_RE.match(text)
    if not text or not match or not (match.group(1) or match.group(2)):
        raise InvalidAmount(f"invalid amount {value!r}", amount=value)
    return Decimal(text)


def to_base_units(human, token: TokenLike, registry: Optional[TokenRegistry] = None) -> BaseUnits:
    """
    Convert a human decimal amount to base units.

    Excess fractional digits beyond the token's precision are truncated,
    never rounded up.
    """
    descriptor = _resolve(token, registry)
    amount = parse_human_amount(human)

    sign, digits, exponent = amount.as_tuple()
    text = "".join(str(d) for d in digits)
    if exponent >= 0:
        integer_part, fraction = text + "0" * exponent, ""
    else:
        split = len(text) + exponent
        integer_part = text[:split] if split > 0 else "0"
        fraction = ("0" * -split if split < 0 else "") + text[max(split, 0):]

    fraction = fraction[:descriptor.decimals].ljust(descriptor.decimals, "0")
    return BaseUnits(int((integer_part or "0") + fraction))


def to_human_units(base, token: TokenLike, registry: Optional[TokenRegistry] = None) -> str:
    """Render a base-unit amount at the token's full precision."""
    descriptor = _resolve(token, registry)
    base = BaseUnits(int(base)) if not isinstance(base, BaseUnits) else base
    whole, remainder = divmod(int(base), descriptor.unit)
    if descriptor.decimals == 0:
        return str(whole)
    return f"{whole}.{remainder:0{descriptor.decimals}d}"


def to_decimal(base, token: TokenLike, registry: Optional[TokenRegistry] = None) -> Decimal:
    return Decimal(to_human_units(base, token, registry))


def format_amount(base, token: TokenLike, places: Optional[int] = None,
                  registry: Optional[TokenRegistry] = None) -> str:
    """Short display form, truncated to the token's display precision."""
    descriptor = _resolve(token, registry)
    places = descriptor.display_decimals if places is None else places
    full = to_human_units(base, descriptor)
    if "." not in full:
        return full if places == 0 else f"{full}.{'0' * places}"
    whole, fraction = full.split(".")
    if places == 0:
        return whole
    return f"{whole}.{fraction[:places].ljust(places, '0')}"
