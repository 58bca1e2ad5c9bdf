"""Settlement service: auto-settlement, manual withdrawal, seller settings and history."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import case, func, select

from stashu_engine.common.config import StashuSettings
from stashu_engine.common.database import DatabaseManager
from stashu_engine.common.exceptions import (
    InsufficientBalanceError,
    PaymentIndeterminateError,
    StashuError,
    ValidationError,
)
from stashu_engine.common.logging import short
from stashu_engine.common.tasks import TaskSupervisor
from stashu_engine.ecash.custody import CustodyService
from stashu_engine.payments.models import PaymentModel
from stashu_engine.settlement.lnaddress import InvoiceResolver, is_valid_address
from stashu_engine.settlement.models import SellerSettingsModel, SettlementLogModel
from stashu_engine.stashes.models import StashModel

logger = logging.getLogger(__name__)

SOURCE_AUTO = "auto_settle"
SOURCE_WITHDRAW = "withdraw"

LOG_SUCCESS = "success"
LOG_FAILED = "failed"
LOG_SKIPPED = "skipped"


@dataclass
class SellerSettings:
    ln_address: str = ""
    auto_withdraw_threshold: int = 0


@dataclass
class Earnings:
    tokens: list[str] = field(default_factory=list)
    total_sats: int = 0


@dataclass
class StashStats:
    id: str
    title: str
    price_sats: int
    unlock_count: int
    total_earned: int
    created_at: object


@dataclass
class Dashboard:
    stashes: list[StashStats]
    earnings: Earnings


@dataclass
class WithdrawQuote:
    quote_id: str
    total_sats: int
    amount_sats: int
    fee_sats: int
    net_sats: int


@dataclass
class WithdrawResult:
    paid: bool
    amount_sats: int
    fee_sats: int
    change_sats: int = 0
    preimage: Optional[str] = None


class SettlementService:
    """Moves a seller's custodied balance out to Lightning."""

    def __init__(
        self,
        settings: StashuSettings,
        db: DatabaseManager,
        custody: CustodyService,
        resolver: InvoiceResolver,
        supervisor: TaskSupervisor | None = None,
    ):
        self.settings = settings
        self.db = db
        self.custody = custody
        self.resolver = resolver
        self.supervisor = supervisor

    # ── Auto-settlement ──

    def schedule(self, seller_pubkey: str) -> None:
        """Queue an auto-settlement check without waiting for it."""
        if self.supervisor is None:
            return
        self.supervisor.submit(
            self.try_auto_settle(seller_pubkey), name=f"auto-settle:{short(seller_pubkey)}",
        )

    async def try_auto_settle(self, seller_pubkey: str) -> str | None:
        """Sweep the seller's balance if it crossed their threshold.

        Never raises. Returns the settlement log status written, or None when
        nothing was due.
        """
        try:
            return await self._auto_settle(seller_pubkey)
        except Exception:
            logger.exception("Auto-settlement crashed for %s", short(seller_pubkey))
            return None

    async def _auto_settle(self, seller_pubkey: str) -> str | None:
        async with self.db.get_session() as session:
            config = await session.get(SellerSettingsModel, seller_pubkey)
            if config is None or not config.ln_address or config.auto_withdraw_threshold <= 0:
                return None
            address = config.ln_address
            threshold = config.auto_withdraw_threshold
            balance = await self.custody.unclaimed_balance(session, seller_pubkey)

        if balance < threshold:
            return None

        logger.info(
            "Auto-settlement triggered for %s (balance: %d sats, threshold: %d sats)",
            short(seller_pubkey), balance, threshold,
        )

        try:
            # First pass learns the fee for the full balance; the fee can depend
            # on the amount, so the payout invoice is resolved again for the net.
            full_invoice = await self.resolver.resolve(address, balance)
            full_quote = await self.custody.client.quote_melt(full_invoice)
            fee = full_quote.fee_reserve_sats
            net = balance - fee
            if net <= 0:
                logger.info(
                    "Auto-settlement skipped for %s: balance %d does not cover %d fee",
                    short(seller_pubkey), balance, fee,
                )
                await self._record(
                    seller_pubkey, LOG_SKIPPED, address, amount=balance, fee=fee, net=net,
                    error=f"Balance {balance} sats does not cover {fee} sats fee",
                )
                return LOG_SKIPPED

            invoice = await self.resolver.resolve(address, net)
            outcome = await self.custody.melt_balance(seller_pubkey, invoice, SOURCE_AUTO)
        except PaymentIndeterminateError as exc:
            await self._record(
                seller_pubkey, LOG_FAILED, address, amount=balance,
                error=f"{exc.message} (quote {exc.quote_id})",
            )
            return LOG_FAILED
        except StashuError as exc:
            logger.warning("Auto-settlement failed for %s: %s", short(seller_pubkey), exc.message)
            await self._record(seller_pubkey, LOG_FAILED, address, amount=balance, error=exc.message)
            return LOG_FAILED

        await self._record(
            seller_pubkey, LOG_SUCCESS, address,
            amount=outcome.amount_sats + outcome.fee_sats,
            fee=outcome.fee_sats,
            net=outcome.amount_sats,
        )
        logger.info(
            "Auto-settlement complete: %d sats sent to %s (fee: %d sats)",
            outcome.amount_sats, address, outcome.fee_sats,
        )
        return LOG_SUCCESS

    async def _record(
        self,
        seller_pubkey: str,
        status: str,
        ln_address: str | None,
        amount: int | None = None,
        fee: int | None = None,
        net: int | None = None,
        error: str | None = None,
    ) -> None:
        async with self.db.get_session() as session:
            session.add(SettlementLogModel(
                seller_pubkey=seller_pubkey,
                status=status,
                amount_sats=amount,
                fee_sats=fee,
                net_sats=net,
                ln_address=ln_address,
                error=error,
            ))

    async def settlement_history(
        self, seller_pubkey: str, limit: int | None = None,
    ) -> list[SettlementLogModel]:
        limit = limit or self.settings.settlement_history_limit
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SettlementLogModel)
                .where(SettlementLogModel.seller_pubkey == seller_pubkey)
                .order_by(SettlementLogModel.created_at.desc(), SettlementLogModel.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Settings ──

    async def get_settings(self, seller_pubkey: str) -> SellerSettings:
        async with self.db.get_session() as session:
            row = await session.get(SellerSettingsModel, seller_pubkey)
        if row is None:
            return SellerSettings()
        return SellerSettings(
            ln_address=row.ln_address or "",
            auto_withdraw_threshold=row.auto_withdraw_threshold or 0,
        )

    async def save_settings(
        self, seller_pubkey: str, ln_address: str | None, threshold: int | float | None,
    ) -> SellerSettings:
        ln_address = (ln_address or "").strip()
        if ln_address and not is_valid_address(ln_address):
            raise ValidationError("Invalid Lightning address format. Expected user@domain.com")
        threshold = max(0, int(threshold or 0))

        async with self.db.get_session() as session:
            row = await session.get(SellerSettingsModel, seller_pubkey)
            if row is None:
                row = SellerSettingsModel(pubkey=seller_pubkey)
                session.add(row)
            row.ln_address = ln_address or None
            row.auto_withdraw_threshold = threshold

        logger.info(
            "Settings saved for %s (threshold: %d sats, address %s)",
            short(seller_pubkey), threshold, "set" if ln_address else "cleared",
        )
        # An existing balance may already be over the new threshold
        self.schedule(seller_pubkey)
        return SellerSettings(ln_address=ln_address, auto_withdraw_threshold=threshold)

    # ── Earnings & withdrawal ──

    async def earnings(self, seller_pubkey: str) -> Earnings:
        async with self.db.get_session() as session:
            holdings = await self.custody.holdings(session, seller_pubkey)
        return Earnings(
            tokens=self.custody.decrypt_tokens(holdings),
            total_sats=holdings.total_sats,
        )

    async def withdraw_quote(self, seller_pubkey: str, invoice: str) -> WithdrawQuote:
        async with self.db.get_session() as session:
            total = await self.custody.unclaimed_balance(session, seller_pubkey)
        if total <= 0:
            raise InsufficientBalanceError("No unclaimed earnings to withdraw")

        quote = await self.custody.client.quote_melt(invoice)
        return WithdrawQuote(
            quote_id=quote.quote_id,
            total_sats=total,
            amount_sats=quote.amount_sats,
            fee_sats=quote.fee_reserve_sats,
            net_sats=total - quote.fee_reserve_sats,
        )

    async def withdraw(self, seller_pubkey: str, invoice: str) -> WithdrawResult:
        if not invoice:
            raise ValidationError("invoice is required")
        outcome = await self.custody.melt_balance(seller_pubkey, invoice, SOURCE_WITHDRAW)
        logger.info(
            "Withdrawal for %s: %d sats paid (fee: %d sats)",
            short(seller_pubkey), outcome.amount_sats, outcome.fee_sats,
        )
        return WithdrawResult(
            paid=True,
            amount_sats=outcome.amount_sats,
            fee_sats=outcome.fee_sats,
            change_sats=outcome.change_sats,
            preimage=outcome.preimage,
        )

    # ── Dashboard ──

    async def dashboard(self, seller_pubkey: str) -> Dashboard:
        is_paid = PaymentModel.status == "paid"
        async with self.db.get_session() as session:
            result = await session.execute(
                select(
                    StashModel.id,
                    StashModel.title,
                    StashModel.price_sats,
                    StashModel.created_at,
                    func.count(case((is_paid, 1))),
                    func.coalesce(func.sum(case((is_paid, PaymentModel.amount_sats), else_=0)), 0),
                )
                .outerjoin(PaymentModel, PaymentModel.stash_id == StashModel.id)
                .where(StashModel.seller_pubkey == seller_pubkey)
                .group_by(StashModel.id)
                .order_by(StashModel.created_at.desc())
            )
            stashes = [
                StashStats(
                    id=row[0], title=row[1], price_sats=row[2], created_at=row[3],
                    unlock_count=row[4], total_earned=row[5],
                )
                for row in result.all()
            ]
        return Dashboard(stashes=stashes, earnings=await self.earnings(seller_pubkey))
