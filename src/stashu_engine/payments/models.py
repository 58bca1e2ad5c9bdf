"""SQLAlchemy models for payments."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stashu_engine.common.models import Base, TimestampMixin

LN_PAYMENT_PREFIX = "ln-"


class PaymentModel(Base, TimestampMixin):
    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_unclaimed", "status", "claimed"),
    )

    # Deterministic: "{stash_id}-{fingerprint}" or "ln-{quote_id}"
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stash_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stashes.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    # sha256 of the buyer token, or the mint quote id for Lightning payments
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    seller_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Encrypted ecash minted for a paid invoice, held until the seller swap succeeds
    minted_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount_sats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    melt_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("pending_melts.id"), nullable=True, index=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
