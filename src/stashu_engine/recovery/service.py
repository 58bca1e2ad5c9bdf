"""Startup reconciliation of melts and mints interrupted by a crash."""

import json
import logging
from dataclasses import asdict, dataclass

from sqlalchemy import select, update

from stashu_engine.common.config import StashuSettings
from stashu_engine.common.database import DatabaseManager
from stashu_engine.common.exceptions import MintError, StashuError, VaultError
from stashu_engine.common.logging import short
from stashu_engine.common.models import utcnow
from stashu_engine.ecash.custody import (
    MELT_ABANDONED,
    MELT_FAILED,
    MELT_PENDING,
    CustodyService,
)
from stashu_engine.ecash.models import PendingMeltModel
from stashu_engine.ecash.wallet import STATE_EXPIRED, STATE_PAID, STATE_UNPAID
from stashu_engine.payments import state
from stashu_engine.payments.models import PaymentModel
from stashu_engine.payments.service import PaymentService
from stashu_engine.stashes.models import StashModel

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    melts_completed: int = 0
    melts_failed: int = 0
    melts_pending: int = 0
    melts_abandoned: int = 0
    mints_recovered: int = 0
    mints_failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class Reconciler:
    """Settles what the mint already knows but the database does not.

    Pending melts are resolved from the mint's view of their quote; payments
    left in ``mint_failed`` are minted again from the stored quote id.
    """

    def __init__(
        self,
        settings: StashuSettings,
        db: DatabaseManager,
        custody: CustodyService,
        payments: PaymentService,
    ):
        self.settings = settings
        self.db = db
        self.custody = custody
        self.client = custody.client
        self.payments = payments

    async def run(self) -> ReconcileReport:
        """Never raises; anything unresolved is left for the next start."""
        report = ReconcileReport()
        try:
            await self.reconcile_melts(report)
        except Exception:
            logger.exception("Melt reconciliation aborted")
        try:
            await self.reconcile_mints(report)
        except Exception:
            logger.exception("Mint reconciliation aborted")

        if any(report.as_dict().values()):
            logger.info("Reconciliation finished: %s", report.as_dict())
        return report

    # ── Melts ──

    async def reconcile_melts(self, report: ReconcileReport) -> None:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(PendingMeltModel)
                .where(PendingMeltModel.status == MELT_PENDING)
                .order_by(PendingMeltModel.created_at)
            )
            melts = list(result.scalars().all())

        if melts:
            logger.info("Found %d pending melt(s), checking with mint", len(melts))

        for melt in melts:
            try:
                mint_state = await self.client.melt_state(melt.quote_id)
            except MintError as exc:
                logger.warning("Could not check melt %s: %s", short(melt.quote_id), exc.message)
                mint_state = None

            if mint_state == STATE_PAID:
                async with self.db.get_session() as session:
                    done = await self.custody.finalize(session, melt.id, None)
                if done:
                    report.melts_completed += 1
                    self._warn_lost_change(melt)
                    logger.info(
                        "Melt %s was PAID (%d sats), marked completed",
                        short(melt.quote_id), melt.amount_sats,
                    )
            elif mint_state in (STATE_UNPAID, STATE_EXPIRED):
                async with self.db.get_session() as session:
                    await self.custody.release_in(session, melt.id, MELT_FAILED)
                report.melts_failed += 1
                logger.info("Melt %s was %s, marked failed", short(melt.quote_id), mint_state)
            else:
                await self._defer(melt, mint_state, report)

    async def _defer(self, melt: PendingMeltModel, mint_state: str | None, report: ReconcileReport) -> None:
        attempts = melt.check_attempts + 1
        status = MELT_PENDING
        if attempts >= self.settings.max_melt_checks:
            # Reservations are kept: the proofs may already be spent
            status = MELT_ABANDONED
        async with self.db.get_session() as session:
            await session.execute(
                update(PendingMeltModel)
                .where(PendingMeltModel.id == melt.id, PendingMeltModel.status == MELT_PENDING)
                .values(check_attempts=attempts, last_checked_at=utcnow(), status=status)
            )

        if status == MELT_ABANDONED:
            report.melts_abandoned += 1
            logger.error(
                "Melt %s still %s after %d checks; abandoned for manual review",
                short(melt.quote_id), mint_state or "unknown", attempts,
            )
        else:
            report.melts_pending += 1
            logger.info(
                "Melt %s still %s at mint (check %d/%d), will retry",
                short(melt.quote_id), mint_state or "unknown", attempts,
                self.settings.max_melt_checks,
            )

    def _warn_lost_change(self, melt: PendingMeltModel) -> None:
        try:
            tokens = json.loads(self.custody.vault.decrypt(melt.proofs_snapshot))
        except (VaultError, ValueError):
            logger.exception("Could not read proofs snapshot of melt %s", short(melt.id))
            return
        spent = sum(self.client.token_value(t) for t in tokens)
        excess = spent - melt.amount_sats
        if excess > 0:
            logger.warning(
                "Melt %s completed during a crash; up to %d sats of fee reserve "
                "change could not be recovered",
                short(melt.quote_id), excess,
            )

    # ── Mints ──

    async def reconcile_mints(self, report: ReconcileReport) -> None:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(PaymentModel, StashModel)
                .join(StashModel, StashModel.id == PaymentModel.stash_id)
                .where(PaymentModel.status == state.MINT_FAILED)
                .order_by(PaymentModel.created_at)
            )
            rows = result.all()

        if rows:
            logger.info("Found %d mint_failed payment(s), retrying mint", len(rows))

        for payment, stash in rows:
            try:
                await self.payments.complete_minted(
                    payment.id, stash, payment.token_hash, state.MINT_FAILED,
                )
            except StashuError as exc:
                report.mints_failed += 1
                logger.warning(
                    "Mint retry for quote %s failed: %s", short(payment.token_hash), exc.message,
                )
                continue
            report.mints_recovered += 1
