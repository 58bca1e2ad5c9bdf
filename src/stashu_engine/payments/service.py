"""Payment service: pull (token) and push (Lightning invoice) settlement flows."""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from stashu_engine.common.config import StashuSettings
from stashu_engine.common.database import DatabaseManager
from stashu_engine.common.exceptions import (
    ConflictError,
    ForbiddenError,
    MintError,
    NotFoundError,
    PaymentRejectedError,
    StashuError,
    ValidationError,
)
from stashu_engine.common.logging import short
from stashu_engine.common.models import utcnow
from stashu_engine.ecash.client import EcashClient, SwapResult
from stashu_engine.ecash.models import ChangeProofModel
from stashu_engine.payments import state
from stashu_engine.payments.models import LN_PAYMENT_PREFIX, PaymentModel
from stashu_engine.stashes.models import StashModel
from stashu_engine.vault.cipher import TokenVault

logger = logging.getLogger(__name__)

# Change-proof source for a swapped seller token whose payment row was already settled
ORPHAN_SOURCE = "orphan_payment"


@dataclass
class UnlockData:
    secret_key: str
    blob_url: str
    file_name: str

    @classmethod
    def from_stash(cls, stash: StashModel) -> "UnlockData":
        return cls(secret_key=stash.secret_key, blob_url=stash.blob_url, file_name=stash.file_name)


@dataclass
class InvoiceResult:
    invoice: str
    quote_id: str
    amount_sats: int
    expires_at: Optional[int] = None


@dataclass
class PollResult:
    paid: bool
    processing: bool = False
    unlock: Optional[UnlockData] = None


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def pull_payment_id(stash_id: str, token: str) -> str:
    return f"{stash_id}-{token_fingerprint(token)[:16]}"


def push_payment_id(quote_id: str) -> str:
    return f"{LN_PAYMENT_PREFIX}{quote_id}"


class PaymentService:
    """Authoritative per-payment lifecycle.

    Claims go through ``state.transition`` so two requests racing on the
    same row cannot both process it. Mint calls are made outside any open
    transaction.
    """

    def __init__(
        self,
        settings: StashuSettings,
        db: DatabaseManager,
        client: EcashClient,
        vault: TokenVault,
        on_paid: Callable[[str], object] | None = None,
    ):
        self.settings = settings
        self.db = db
        self.client = client
        self.vault = vault
        self.on_paid = on_paid

    # ── Lookups ──

    async def get_stash(self, stash_id: str) -> StashModel:
        async with self.db.get_session() as session:
            stash = await session.get(StashModel, stash_id)
        if stash is None:
            raise NotFoundError("Stash not found")
        return stash

    async def get_payment(self, payment_id: str) -> PaymentModel | None:
        async with self.db.get_session() as session:
            return await session.get(PaymentModel, payment_id)

    def _paid(self, seller_pubkey: str) -> None:
        if self.on_paid is not None:
            self.on_paid(seller_pubkey)

    # ── Pull payments ──

    async def unlock(self, stash_id: str, token: str) -> UnlockData:
        """Redeem a buyer token against a stash. Idempotent per (stash, token)."""
        token = (token or "").strip()
        if not token:
            raise ValidationError("Token is required")

        stash = await self.get_stash(stash_id)
        payment_id = pull_payment_id(stash_id, token)

        existing = await self.get_payment(payment_id)
        if existing is not None:
            return self._answer_existing(existing, stash)

        try:
            async with self.db.get_session() as session:
                session.add(PaymentModel(
                    id=payment_id,
                    stash_id=stash_id,
                    status=state.PENDING,
                    token_hash=token_fingerprint(token),
                ))
        except IntegrityError:
            # A concurrent request inserted the same payment first
            existing = await self.get_payment(payment_id)
            if existing is None:
                raise
            return self._answer_existing(existing, stash)

        async with self.db.get_session() as session:
            won = await state.transition(session, payment_id, state.PENDING, state.PROCESSING)
        if not won:
            return self._answer_existing(await self.get_payment(payment_id), stash)

        try:
            swap = await self.client.verify_and_swap(token, stash.price_sats)
        except StashuError as exc:
            async with self.db.get_session() as session:
                await state.transition(
                    session, payment_id, state.PROCESSING, state.FAILED, error=exc.message,
                )
            logger.info("Payment %s failed: %s", short(payment_id, 16), exc.message)
            raise

        await self._record_paid(payment_id, state.PROCESSING, swap, stash.seller_pubkey)
        logger.info(
            "Stash %s unlocked with token (%d sats)", short(stash_id), swap.amount_sats,
        )
        self._paid(stash.seller_pubkey)
        return UnlockData.from_stash(stash)

    @staticmethod
    def _answer_existing(payment: PaymentModel, stash: StashModel) -> UnlockData:
        if payment.status == state.PAID:
            return UnlockData.from_stash(stash)
        if payment.status in (state.PENDING, state.PROCESSING):
            raise ConflictError("Payment is processing, please wait")
        raise PaymentRejectedError("Previous payment failed, try with a new token")

    # ── Push payments ──

    async def create_invoice(self, stash_id: str) -> InvoiceResult:
        """Request a mint invoice and bind its quote to the stash before returning it."""
        stash = await self.get_stash(stash_id)
        quote = await self.client.create_invoice(stash.price_sats)

        async with self.db.get_session() as session:
            session.add(PaymentModel(
                id=push_payment_id(quote.quote_id),
                stash_id=stash.id,
                status=state.PENDING,
                token_hash=quote.quote_id,
            ))
        logger.info("Invoice created for stash %s (quote %s)", short(stash_id), short(quote.quote_id))
        return InvoiceResult(
            invoice=quote.invoice,
            quote_id=quote.quote_id,
            amount_sats=stash.price_sats,
            expires_at=quote.expires_at,
        )

    async def poll_invoice(self, stash_id: str, quote_id: str) -> PollResult:
        payment_id = push_payment_id(quote_id)
        async with self.db.get_session() as session:
            payment = await session.get(PaymentModel, payment_id)
            if payment is None:
                raise NotFoundError("Unknown payment quote")
            # Checked on every poll: a quote only ever unlocks the stash it was created for
            if payment.stash_id != stash_id:
                raise ForbiddenError("Quote does not belong to this stash")
            stash = await session.get(StashModel, stash_id)
        if stash is None:
            raise NotFoundError("Stash not found")

        if payment.status != state.PENDING:
            return self._answer_poll(payment, stash)

        if not await self.client.check_paid(quote_id):
            return PollResult(paid=False)

        async with self.db.get_session() as session:
            won = await state.transition(session, payment_id, state.PENDING, state.PROCESSING)
        if not won:
            # Another poll claimed it; answer from whatever it has reached
            return self._answer_poll(await self.get_payment(payment_id), stash)

        unlock = await self.complete_minted(payment_id, stash, quote_id, state.PROCESSING)
        return PollResult(paid=True, unlock=unlock)

    @staticmethod
    def _answer_poll(payment: PaymentModel, stash: StashModel) -> PollResult:
        if payment.status == state.PAID:
            return PollResult(paid=True, unlock=UnlockData.from_stash(stash))
        if payment.status == state.FAILED:
            raise PaymentRejectedError("Payment failed")
        if payment.status == state.MINT_FAILED:
            raise MintError("Payment received, processing will be retried")
        return PollResult(paid=False, processing=True)

    async def complete_minted(
        self, payment_id: str, stash: StashModel, quote_id: str, from_state: str,
    ) -> UnlockData:
        """Mint ecash for a paid invoice, swap it to the seller and mark the payment paid.

        Shared by the live poll (from ``processing``) and the Reconciler
        (from ``mint_failed``). A failure here never marks the payment
        ``failed``: the invoice was paid, so the quote id is kept for retry.
        Minted ecash is stored on the row before the swap; the mint issues a
        quote only once, so a retry swaps the stored token instead of minting.
        """
        try:
            minted = await self._minted_token(payment_id)
            if minted is None:
                minted = await self.client.mint_after_payment(stash.price_sats, quote_id)
                async with self.db.get_session() as session:
                    await session.execute(
                        update(PaymentModel)
                        .where(PaymentModel.id == payment_id)
                        .values(minted_token=self.vault.encrypt(minted), updated_at=utcnow())
                    )
            else:
                logger.info("Retrying swap of stored ecash for quote %s", short(quote_id))
            swap = await self.client.verify_and_swap(minted, stash.price_sats)
        except Exception as exc:
            logger.exception("Mint after payment failed for quote %s", short(quote_id))
            reason = exc.message if isinstance(exc, StashuError) else str(exc)
            async with self.db.get_session() as session:
                if from_state == state.PROCESSING:
                    await state.transition(
                        session, payment_id, state.PROCESSING, state.MINT_FAILED,
                        token_hash=quote_id, error=reason,
                    )
                else:
                    await session.execute(
                        update(PaymentModel)
                        .where(PaymentModel.id == payment_id)
                        .values(error=reason, updated_at=utcnow())
                    )
            raise MintError("Payment received but token processing failed; it will be retried") from exc

        await self._record_paid(payment_id, from_state, swap, stash.seller_pubkey)
        logger.info("Stash %s unlocked via Lightning (%d sats)", short(stash.id), swap.amount_sats)
        self._paid(stash.seller_pubkey)
        return UnlockData.from_stash(stash)

    async def _minted_token(self, payment_id: str) -> str | None:
        payment = await self.get_payment(payment_id)
        if payment is None or not payment.minted_token:
            return None
        return self.vault.decrypt(payment.minted_token)

    async def _record_paid(
        self, payment_id: str, from_state: str, swap: SwapResult, seller_pubkey: str,
    ) -> None:
        """Store the seller token from a completed swap.

        The buyer's ecash is already spent at this point, so the token is
        written somewhere even when the row has moved on without us.
        """
        seller_token = self.vault.encrypt(swap.seller_token)
        values = dict(
            seller_token=seller_token,
            amount_sats=swap.amount_sats,
            paid_at=utcnow(),
            error=None,
            minted_token=None,
        )
        async with self.db.get_session() as session:
            if await state.transition(session, payment_id, from_state, state.PAID, **values):
                return

            # Cleanup timed the row out while the swap was in flight
            result = await session.execute(
                update(PaymentModel)
                .where(
                    PaymentModel.id == payment_id,
                    PaymentModel.status.in_((state.FAILED, state.MINT_FAILED)),
                )
                .values(status=state.PAID, updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                logger.error(
                    "Payment %s left %s before its swap finished; recorded as paid",
                    short(payment_id, 16), from_state,
                )
                return

            session.add(ChangeProofModel(
                seller_pubkey=seller_pubkey,
                ciphertext=seller_token,
                amount_sats=swap.amount_sats,
                source=ORPHAN_SOURCE,
            ))
        logger.error(
            "Payment %s was already settled elsewhere; kept %d swapped sats as custodied change",
            short(payment_id, 16), swap.amount_sats,
        )

    # ── Maintenance ──

    async def cleanup_stale(self, now: datetime | None = None) -> dict:
        """Expire abandoned invoices and unstick rows left in flight."""
        now = now or utcnow()
        invoice_cutoff = now - timedelta(seconds=self.settings.stale_invoice_ttl_seconds)
        processing_cutoff = now - timedelta(seconds=self.settings.processing_ttl_seconds)

        async with self.db.get_session() as session:
            result = await session.execute(
                select(PaymentModel.id, PaymentModel.token_hash).where(
                    PaymentModel.id.like(f"{LN_PAYMENT_PREFIX}%"),
                    PaymentModel.status == state.PENDING,
                    PaymentModel.created_at < invoice_cutoff,
                )
            )
            stale_invoices = result.all()

        expired = 0
        for payment_id, quote_id in stale_invoices:
            try:
                if await self.client.check_paid(quote_id):
                    # Paid but never polled; the next poll will mint it
                    continue
            except MintError as exc:
                logger.warning("Skipping stale invoice %s: %s", short(quote_id), exc.message)
                continue
            async with self.db.get_session() as session:
                result = await session.execute(
                    delete(PaymentModel).where(
                        PaymentModel.id == payment_id, PaymentModel.status == state.PENDING,
                    )
                )
                expired += result.rowcount

        async with self.db.get_session() as session:
            stuck_ln = await session.execute(
                update(PaymentModel)
                .where(
                    PaymentModel.id.like(f"{LN_PAYMENT_PREFIX}%"),
                    PaymentModel.status == state.PROCESSING,
                    PaymentModel.updated_at < processing_cutoff,
                )
                .values(status=state.MINT_FAILED, error="Processing timed out", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            stuck_pull = await session.execute(
                update(PaymentModel)
                .where(
                    PaymentModel.id.not_like(f"{LN_PAYMENT_PREFIX}%"),
                    PaymentModel.status.in_((state.PENDING, state.PROCESSING)),
                    PaymentModel.updated_at < processing_cutoff,
                )
                .values(status=state.FAILED, error="Processing timed out", updated_at=now)
                .execution_options(synchronize_session=False)
            )

        report = {
            "expired_invoices": expired,
            "mint_failed": stuck_ln.rowcount,
            "failed": stuck_pull.rowcount,
        }
        if any(report.values()):
            logger.info(
                "Payment cleanup: %d invoices expired, %d marked mint_failed, %d marked failed",
                report["expired_invoices"], report["mint_failed"], report["failed"],
            )
        return report
