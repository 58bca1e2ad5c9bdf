"""SQLAlchemy models for custodied change and in-flight melts."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stashu_engine.common.models import Base, CreatedAtMixin, generate_uuid


class ChangeProofModel(Base, CreatedAtMixin):
    """Ecash returned by the mint when a melt overshoots; counted as balance until spent."""

    __tablename__ = "change_proofs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    seller_pubkey: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    amount_sats: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="auto_settle")
    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    melt_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("pending_melts.id"), nullable=True, index=True
    )


class PendingMeltModel(Base, CreatedAtMixin):
    """Written before a melt is attempted so a crash mid-melt stays recoverable."""

    __tablename__ = "pending_melts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    seller_pubkey: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quote_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    # Encrypted JSON list of the token strings being melted
    proofs_snapshot: Mapped[str] = mapped_column(Text, nullable=False)
    invoice: Mapped[str] = mapped_column(Text, nullable=False)
    amount_sats: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_reserve_sats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="auto_settle")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    check_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
