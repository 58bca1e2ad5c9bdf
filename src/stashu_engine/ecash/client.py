"""Ecash settlement client — swap, melt and mint orchestration around a MintWallet."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, TypeVar

from stashu_engine.common.exceptions import (
    InsufficientBalanceError,
    InsufficientValueError,
    MintError,
    PaymentFailedError,
    PaymentIndeterminateError,
    StashuError,
    ValidationError,
)
from stashu_engine.common.logging import short
from stashu_engine.ecash.wallet import (
    STATE_ISSUED,
    STATE_PAID,
    STATE_UNPAID,
    DecodedToken,
    MeltQuote,
    MintWallet,
    Proof,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SwapResult:
    seller_token: str
    amount_sats: int


@dataclass
class InvoiceQuote:
    invoice: str
    quote_id: str
    amount_sats: int
    expires_at: int | None = None


@dataclass
class MeltOutcome:
    quote_id: str
    preimage: str | None
    amount_sats: int
    input_sats: int
    fee_sats: int
    change_token: str | None = None
    change_sats: int = 0


class EcashClient:
    """Turns bearer tokens into value under this service's control, and back out to Lightning."""

    def __init__(self, wallet: MintWallet, timeout: float = 30.0):
        self.wallet = wallet
        self.timeout = timeout

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Bound a mint call. Timeouts and transport failures become MintError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except StashuError:
            raise
        except asyncio.TimeoutError as exc:
            raise MintError(f"Mint {operation} timed out after {self.timeout:g}s") from exc
        except Exception as exc:
            raise MintError(f"Mint {operation} failed: {exc}") from exc

    # ── Decoding ──

    def decode(self, token: str) -> DecodedToken:
        try:
            decoded = self.wallet.decode_token(token.strip())
        except Exception as exc:
            raise ValidationError(f"Invalid Cashu token: {exc}") from exc
        if not decoded.proofs:
            raise ValidationError("Invalid Cashu token: no proofs")
        return decoded

    def token_value(self, token: str) -> int:
        """Total proof value of a token, 0 if it cannot be decoded."""
        try:
            return self.wallet.decode_token(token.strip()).amount
        except Exception:
            return 0

    # ── Incoming tokens ──

    async def verify_and_swap(self, token: str, expected_sats: int) -> SwapResult:
        """Check a buyer token covers the price and swap it for fresh seller proofs.

        The buyer's proofs are never stored; the swap both proves they are
        unspent and breaks the link between buyer and seller.
        """
        decoded = self.decode(token)
        total = decoded.amount
        if total < expected_sats:
            raise InsufficientValueError(
                f"Insufficient token value: {total} sats, expected {expected_sats} sats"
            )

        fresh = await self._call("swap", self.wallet.swap(decoded.proofs))
        swapped = sum(p.amount for p in fresh)
        if not fresh or swapped <= 0:
            raise MintError("Mint returned no proofs for swap")
        return SwapResult(seller_token=self.wallet.encode_token(fresh), amount_sats=swapped)

    # ── Outgoing (melt) ──

    async def quote_melt(self, invoice: str) -> MeltQuote:
        if not invoice:
            raise ValidationError("invoice is required")
        return await self._call("melt quote", self.wallet.melt_quote(invoice))

    async def melt_state(self, quote_id: str) -> str:
        return await self._call("melt state", self.wallet.melt_quote_state(quote_id))

    async def melt(
        self, tokens: list[str], invoice: str, quote: MeltQuote | None = None,
    ) -> MeltOutcome:
        """Pay a Lightning invoice with custodied tokens.

        Raises PaymentFailedError only when the mint says the payment did not
        happen; any doubt raises PaymentIndeterminateError instead.
        """
        proofs: list[Proof] = []
        for token in tokens:
            proofs.extend(self.decode(token).proofs)
        input_sats = sum(p.amount for p in proofs)

        if quote is None:
            quote = await self.quote_melt(invoice)
        required = quote.amount_sats + quote.fee_reserve_sats
        if input_sats < required:
            raise InsufficientBalanceError(
                f"Insufficient balance: {input_sats} sats available, {required} sats needed "
                f"({quote.amount_sats} + {quote.fee_reserve_sats} fee reserve)"
            )

        try:
            response = await asyncio.wait_for(
                self.wallet.melt(proofs, quote), timeout=self.timeout,
            )
        except Exception as exc:
            # The request may have reached the mint; ask before deciding.
            logger.warning("Melt %s raised %r, checking quote state", short(quote.quote_id), exc)
            state = await self._state_after_error(quote.quote_id)
            if state == STATE_UNPAID:
                raise PaymentFailedError(f"Lightning payment failed: {exc}") from exc
            if state != STATE_PAID:
                raise PaymentIndeterminateError(quote_id=quote.quote_id) from exc
            return MeltOutcome(
                quote_id=quote.quote_id,
                preimage=None,
                amount_sats=quote.amount_sats,
                input_sats=input_sats,
                fee_sats=input_sats - quote.amount_sats,
            )

        if response.state == STATE_UNPAID:
            raise PaymentFailedError("Lightning payment failed: mint reported UNPAID")
        if response.state != STATE_PAID:
            raise PaymentIndeterminateError(
                f"Lightning payment is {response.state} at the mint; it will be reconciled",
                quote_id=quote.quote_id,
            )

        change_sats = sum(p.amount for p in response.change)
        change_token = self.wallet.encode_token(response.change) if response.change else None
        return MeltOutcome(
            quote_id=quote.quote_id,
            preimage=response.preimage,
            amount_sats=quote.amount_sats,
            input_sats=input_sats,
            fee_sats=input_sats - quote.amount_sats - change_sats,
            change_token=change_token,
            change_sats=change_sats,
        )

    async def _state_after_error(self, quote_id: str) -> str | None:
        try:
            return await self.melt_state(quote_id)
        except MintError:
            logger.exception("Could not read state of melt %s", short(quote_id))
            return None

    # ── Incoming Lightning (mint) ──

    async def create_invoice(self, amount_sats: int) -> InvoiceQuote:
        quote = await self._call("mint quote", self.wallet.mint_quote(amount_sats))
        return InvoiceQuote(
            invoice=quote.invoice,
            quote_id=quote.quote_id,
            amount_sats=amount_sats,
            expires_at=quote.expiry,
        )

    async def check_paid(self, quote_id: str) -> bool:
        state = await self._call("mint quote state", self.wallet.mint_quote_state(quote_id))
        return state in (STATE_PAID, STATE_ISSUED)

    async def mint_after_payment(self, amount_sats: int, quote_id: str) -> str:
        proofs = await self._call("mint", self.wallet.mint(amount_sats, quote_id))
        if not proofs:
            raise MintError(f"Mint returned no proofs for quote {short(quote_id)}")
        return self.wallet.encode_token(proofs)
