"""SQLAlchemy models for seller settings and the settlement log."""

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stashu_engine.common.models import Base, CreatedAtMixin, TimestampMixin


class SellerSettingsModel(Base, TimestampMixin):
    __tablename__ = "seller_settings"

    pubkey: Mapped[str] = mapped_column(String(64), primary_key=True)
    ln_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auto_withdraw_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class SettlementLogModel(Base, CreatedAtMixin):
    """Append-only. Rows are inserted and never updated."""

    __tablename__ = "settlement_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_pubkey: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_sats: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fee_sats: Mapped[int | None] = mapped_column(Integer, nullable=True)
    net_sats: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ln_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
