"""SQLAlchemy models for stashes."""

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stashu_engine.common.models import Base, CreatedAtMixin, generate_uuid


class StashModel(Base, CreatedAtMixin):
    __tablename__ = "stashes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    blob_url: Mapped[str] = mapped_column(Text, nullable=False)
    # Symmetric key + nonce for the hosted ciphertext; released only after payment.
    secret_key: Mapped[str] = mapped_column(Text, nullable=False)
    seller_pubkey: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    price_sats: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False, default="file")
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    preview_url: Mapped[str | None] = mapped_column(Text, nullable=True)
