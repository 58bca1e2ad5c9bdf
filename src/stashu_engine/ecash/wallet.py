"""Mint protocol client boundary.

The engine never builds blinded messages or unblinds signatures itself; it
talks to the mint through a ``MintWallet``. Production uses the nutshell
adapter in ``stashu_engine.ecash.nutshell``; tests script a fake.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

# NUT-04 / NUT-05 quote states
STATE_UNPAID = "UNPAID"
STATE_PENDING = "PENDING"
STATE_PAID = "PAID"
STATE_ISSUED = "ISSUED"
STATE_EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class Proof:
    amount: int
    secret: str
    C: str
    id: str = ""


@dataclass
class DecodedToken:
    mint: str
    proofs: list[Proof]
    unit: str = "sat"
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum(p.amount for p in self.proofs)


@dataclass
class MeltQuote:
    quote_id: str
    amount_sats: int
    fee_reserve_sats: int
    state: str = STATE_UNPAID
    expiry: int | None = None


@dataclass
class MeltResponse:
    state: str
    preimage: str | None = None
    change: list[Proof] = field(default_factory=list)


@dataclass
class MintQuote:
    quote_id: str
    invoice: str
    amount_sats: int
    state: str = STATE_UNPAID
    expiry: int | None = None


@runtime_checkable
class MintWallet(Protocol):
    """Operations the engine needs from a Cashu wallet bound to one mint."""

    mint_url: str

    def decode_token(self, token: str) -> DecodedToken:
        """Parse a serialized token. Raises ValueError when malformed."""
        ...

    def encode_token(self, proofs: list[Proof]) -> str: ...

    async def swap(self, proofs: list[Proof]) -> list[Proof]:
        """Redeem proofs for fresh ones of equal total value."""
        ...

    async def melt_quote(self, invoice: str) -> MeltQuote: ...

    async def melt(self, proofs: list[Proof], quote: MeltQuote) -> MeltResponse: ...

    async def melt_quote_state(self, quote_id: str) -> str: ...

    async def mint_quote(self, amount_sats: int) -> MintQuote: ...

    async def mint_quote_state(self, quote_id: str) -> str: ...

    async def mint(self, amount_sats: int, quote_id: str) -> list[Proof]: ...
