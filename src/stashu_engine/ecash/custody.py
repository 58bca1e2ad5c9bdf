"""Custodied balance: reservation, melt and finalization of a seller's ecash."""

import json
import logging
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stashu_engine.common.database import DatabaseManager
from stashu_engine.common.exceptions import (
    ConflictError,
    InsufficientBalanceError,
    PaymentIndeterminateError,
    StashuError,
)
from stashu_engine.common.logging import short
from stashu_engine.common.models import generate_uuid, utcnow
from stashu_engine.ecash.client import EcashClient, MeltOutcome
from stashu_engine.ecash.models import ChangeProofModel, PendingMeltModel
from stashu_engine.ecash.wallet import MeltQuote
from stashu_engine.payments.models import PaymentModel
from stashu_engine.stashes.models import StashModel
from stashu_engine.vault.cipher import TokenVault

logger = logging.getLogger(__name__)

MELT_PENDING = "pending"
MELT_COMPLETED = "completed"
MELT_FAILED = "failed"
MELT_ABANDONED = "abandoned"


@dataclass
class Holdings:
    """A seller's spendable rows, excluding any reserved by an in-flight melt."""

    payments: list[PaymentModel]
    change: list[ChangeProofModel]

    @property
    def total_sats(self) -> int:
        return sum(p.amount_sats for p in self.payments) + sum(c.amount_sats for c in self.change)

    def __bool__(self) -> bool:
        return bool(self.payments or self.change)


def _unclaimed_payments_query(seller_pubkey: str):
    return (
        select(PaymentModel)
        .join(StashModel, StashModel.id == PaymentModel.stash_id)
        .where(
            StashModel.seller_pubkey == seller_pubkey,
            PaymentModel.status == "paid",
            PaymentModel.claimed.is_(False),
            PaymentModel.melt_id.is_(None),
            PaymentModel.seller_token.is_not(None),
        )
        .order_by(PaymentModel.paid_at)
    )


def _unconsumed_change_query(seller_pubkey: str):
    return (
        select(ChangeProofModel)
        .where(
            ChangeProofModel.seller_pubkey == seller_pubkey,
            ChangeProofModel.consumed.is_(False),
            ChangeProofModel.melt_id.is_(None),
        )
        .order_by(ChangeProofModel.created_at)
    )


class CustodyService:
    """The only code path that spends custodied tokens."""

    def __init__(self, db: DatabaseManager, client: EcashClient, vault: TokenVault):
        self.db = db
        self.client = client
        self.vault = vault

    # ── Balances ──

    async def holdings(self, session: AsyncSession, seller_pubkey: str) -> Holdings:
        payments = (await session.execute(_unclaimed_payments_query(seller_pubkey))).scalars().all()
        change = (await session.execute(_unconsumed_change_query(seller_pubkey))).scalars().all()
        return Holdings(payments=list(payments), change=list(change))

    async def unclaimed_balance(self, session: AsyncSession, seller_pubkey: str) -> int:
        payments_total = await session.scalar(
            select(func.coalesce(func.sum(PaymentModel.amount_sats), 0))
            .join(StashModel, StashModel.id == PaymentModel.stash_id)
            .where(
                StashModel.seller_pubkey == seller_pubkey,
                PaymentModel.status == "paid",
                PaymentModel.claimed.is_(False),
                PaymentModel.melt_id.is_(None),
                PaymentModel.seller_token.is_not(None),
            )
        )
        change_total = await session.scalar(
            select(func.coalesce(func.sum(ChangeProofModel.amount_sats), 0)).where(
                ChangeProofModel.seller_pubkey == seller_pubkey,
                ChangeProofModel.consumed.is_(False),
                ChangeProofModel.melt_id.is_(None),
            )
        )
        return int(payments_total or 0) + int(change_total or 0)

    def decrypt_tokens(self, holdings: Holdings) -> list[str]:
        tokens = [self.vault.decrypt(p.seller_token) for p in holdings.payments]
        tokens.extend(self.vault.decrypt(c.ciphertext) for c in holdings.change)
        return tokens

    # ── Melt ──

    async def melt_balance(
        self,
        seller_pubkey: str,
        invoice: str,
        source: str,
        quote: MeltQuote | None = None,
    ) -> MeltOutcome:
        """Spend the seller's whole custodied balance against ``invoice``.

        Rows are reserved and a PendingMelt is written in one transaction
        before anything is sent to the mint. An indeterminate outcome leaves
        the reservation in place for the Reconciler.
        """
        if quote is None:
            quote = await self.client.quote_melt(invoice)

        melt_id, tokens = await self._reserve(seller_pubkey, invoice, source, quote)
        logger.info(
            "Melt %s reserved for %s: quote %s, %d sats + %d reserve",
            short(melt_id), short(seller_pubkey), short(quote.quote_id),
            quote.amount_sats, quote.fee_reserve_sats,
        )

        try:
            outcome = await self.client.melt(tokens, invoice, quote)
        except PaymentIndeterminateError:
            logger.warning(
                "Melt %s outcome unknown (quote %s); left for reconciliation",
                short(melt_id), short(quote.quote_id),
            )
            raise
        except StashuError as exc:
            await self.release(melt_id, MELT_FAILED)
            logger.warning("Melt %s failed: %s", short(melt_id), exc.message)
            raise

        async with self.db.get_session() as session:
            await self.finalize(session, melt_id, outcome)
        logger.info(
            "Melt %s completed: %d sats paid, fee %d, change %d",
            short(melt_id), outcome.amount_sats, outcome.fee_sats, outcome.change_sats,
        )
        return outcome

    async def _reserve(
        self, seller_pubkey: str, invoice: str, source: str, quote: MeltQuote,
    ) -> tuple[str, list[str]]:
        async with self.db.get_session() as session:
            holdings = await self.holdings(session, seller_pubkey)
            if not holdings:
                raise InsufficientBalanceError("No unclaimed balance")
            tokens = self.decrypt_tokens(holdings)
            available = sum(self.client.token_value(t) for t in tokens)
            required = quote.amount_sats + quote.fee_reserve_sats
            if available < required:
                raise InsufficientBalanceError(
                    f"Insufficient balance: {available} sats available, {required} sats needed "
                    f"({quote.amount_sats} + {quote.fee_reserve_sats} fee reserve)"
                )

            melt_id = generate_uuid()
            session.add(PendingMeltModel(
                id=melt_id,
                seller_pubkey=seller_pubkey,
                quote_id=quote.quote_id,
                proofs_snapshot=self.vault.encrypt(json.dumps(tokens)),
                invoice=invoice,
                amount_sats=quote.amount_sats,
                fee_reserve_sats=quote.fee_reserve_sats,
                source=source,
                status=MELT_PENDING,
            ))
            await session.flush()

            payment_ids = [p.id for p in holdings.payments]
            if payment_ids:
                result = await session.execute(
                    update(PaymentModel)
                    .where(
                        PaymentModel.id.in_(payment_ids),
                        PaymentModel.melt_id.is_(None),
                        PaymentModel.claimed.is_(False),
                    )
                    .values(melt_id=melt_id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != len(payment_ids):
                    raise ConflictError("Another withdrawal is already in progress")

            change_ids = [c.id for c in holdings.change]
            if change_ids:
                result = await session.execute(
                    update(ChangeProofModel)
                    .where(
                        ChangeProofModel.id.in_(change_ids),
                        ChangeProofModel.melt_id.is_(None),
                        ChangeProofModel.consumed.is_(False),
                    )
                    .values(melt_id=melt_id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != len(change_ids):
                    raise ConflictError("Another withdrawal is already in progress")

        return melt_id, tokens

    async def finalize(
        self, session: AsyncSession, melt_id: str, outcome: MeltOutcome | None,
    ) -> bool:
        """Apply a completed melt: claim reserved rows and store any change.

        ``outcome`` is None when the Reconciler learns of a completion after a
        crash, in which case no change is known. Returns False if the melt
        was no longer pending.
        """
        melt = await session.get(PendingMeltModel, melt_id)
        if melt is None or melt.status not in (MELT_PENDING, MELT_ABANDONED):
            return False

        result = await session.execute(
            update(PendingMeltModel)
            .where(
                PendingMeltModel.id == melt_id,
                PendingMeltModel.status.in_((MELT_PENDING, MELT_ABANDONED)),
            )
            .values(status=MELT_COMPLETED, last_checked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await session.execute(
            update(PaymentModel)
            .where(PaymentModel.melt_id == melt_id, PaymentModel.status == "paid")
            .values(claimed=True)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(ChangeProofModel)
            .where(ChangeProofModel.melt_id == melt_id)
            .values(consumed=True)
            .execution_options(synchronize_session=False)
        )

        if outcome is not None and outcome.change_token and outcome.change_sats > 0:
            session.add(ChangeProofModel(
                seller_pubkey=melt.seller_pubkey,
                ciphertext=self.vault.encrypt(outcome.change_token),
                amount_sats=outcome.change_sats,
                source=melt.source,
            ))
        return True

    async def release(self, melt_id: str, status: str = MELT_FAILED) -> None:
        """Give a melt's reserved rows back to the balance and close the melt."""
        async with self.db.get_session() as session:
            await self.release_in(session, melt_id, status)

    async def release_in(self, session: AsyncSession, melt_id: str, status: str) -> None:
        await session.execute(
            update(PaymentModel)
            .where(PaymentModel.melt_id == melt_id, PaymentModel.claimed.is_(False))
            .values(melt_id=None)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(ChangeProofModel)
            .where(ChangeProofModel.melt_id == melt_id, ChangeProofModel.consumed.is_(False))
            .values(melt_id=None)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(PendingMeltModel)
            .where(PendingMeltModel.id == melt_id, PendingMeltModel.status == MELT_PENDING)
            .values(status=status, last_checked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
