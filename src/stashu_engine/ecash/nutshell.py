"""MintWallet backed by the nutshell ``cashu`` library.

Installed with the ``mint`` extra. Imported lazily by the app factory so the
engine and its tests run without it.
"""

import logging

from cashu.core.base import Proof as CashuProof
from cashu.core.base import TokenV3, TokenV3Token
from cashu.wallet.helpers import deserialize_token_from_string
from cashu.wallet.wallet import Wallet

from stashu_engine.ecash.wallet import (
    STATE_PAID,
    STATE_UNPAID,
    DecodedToken,
    MeltQuote,
    MeltResponse,
    MintQuote,
    Proof,
)

logger = logging.getLogger(__name__)


def _to_cashu(proof: Proof) -> CashuProof:
    return CashuProof(id=proof.id, amount=proof.amount, secret=proof.secret, C=proof.C)


def _from_cashu(proof: CashuProof) -> Proof:
    return Proof(amount=proof.amount, secret=proof.secret, C=proof.C, id=proof.id or "")


def _state(response) -> str:
    state = getattr(response, "state", None)
    if state is not None:
        return str(getattr(state, "value", state)).upper()
    # Older mints only report a boolean
    return STATE_PAID if getattr(response, "paid", False) else STATE_UNPAID


class NutshellWallet:
    """One nutshell wallet bound to the configured mint, created once at startup."""

    def __init__(self, wallet: Wallet, mint_url: str, unit: str = "sat"):
        self._wallet = wallet
        self.mint_url = mint_url
        self.unit = unit

    @classmethod
    async def connect(cls, mint_url: str, db_path: str, unit: str = "sat") -> "NutshellWallet":
        wallet = await Wallet.with_db(url=mint_url, db=db_path, name="stashu", unit=unit)
        await wallet.load_mint()
        logger.info("Connected to mint %s", mint_url)
        return cls(wallet, mint_url, unit)

    def decode_token(self, token: str) -> DecodedToken:
        try:
            decoded = deserialize_token_from_string(token)
        except Exception as exc:
            raise ValueError(str(exc)) from exc
        return DecodedToken(
            mint=decoded.mint,
            proofs=[_from_cashu(p) for p in decoded.proofs],
            unit=decoded.unit or self.unit,
            memo=decoded.memo,
        )

    def encode_token(self, proofs: list[Proof]) -> str:
        token = TokenV3(
            token=[TokenV3Token(mint=self.mint_url, proofs=[_to_cashu(p) for p in proofs])],
            unit=self.unit,
        )
        return token.serialize()

    async def swap(self, proofs: list[Proof]) -> list[Proof]:
        keep, send = await self._wallet.redeem([_to_cashu(p) for p in proofs])
        return [_from_cashu(p) for p in list(keep) + list(send)]

    async def melt_quote(self, invoice: str) -> MeltQuote:
        quote = await self._wallet.melt_quote(invoice)
        return MeltQuote(
            quote_id=quote.quote,
            amount_sats=quote.amount,
            fee_reserve_sats=quote.fee_reserve,
            state=_state(quote),
            expiry=quote.expiry,
        )

    async def melt(self, proofs: list[Proof], quote: MeltQuote) -> MeltResponse:
        # Change proofs are unblinded into the wallet's own proof list.
        before = {p.secret for p in self._wallet.proofs}
        response = await self._wallet.melt(
            proofs=[_to_cashu(p) for p in proofs],
            invoice=None,
            fee_reserve_sat=quote.fee_reserve_sats,
            quote_id=quote.quote_id,
        )
        change = [_from_cashu(p) for p in self._wallet.proofs if p.secret not in before]
        return MeltResponse(
            state=_state(response),
            preimage=getattr(response, "payment_preimage", None),
            change=change,
        )

    async def melt_quote_state(self, quote_id: str) -> str:
        return _state(await self._wallet.get_melt_quote(quote_id))

    async def mint_quote(self, amount_sats: int) -> MintQuote:
        quote = await self._wallet.request_mint(amount_sats)
        return MintQuote(
            quote_id=quote.quote,
            invoice=quote.request,
            amount_sats=amount_sats,
            state=_state(quote),
            expiry=quote.expiry,
        )

    async def mint_quote_state(self, quote_id: str) -> str:
        return _state(await self._wallet.get_mint_quote(quote_id))

    async def mint(self, amount_sats: int, quote_id: str) -> list[Proof]:
        proofs = await self._wallet.mint(amount_sats, quote_id=quote_id)
        return [_from_cashu(p) for p in proofs]
