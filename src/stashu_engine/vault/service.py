"""Vault startup checks: integrity check and plaintext migration."""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stashu_engine.common.database import DatabaseManager
from stashu_engine.common.exceptions import ConfigurationError, VaultError
from stashu_engine.ecash.models import ChangeProofModel, PendingMeltModel
from stashu_engine.payments.models import PaymentModel
from stashu_engine.vault.cipher import TokenVault

logger = logging.getLogger(__name__)

# (model, primary key attribute, encrypted column)
VAULTED_COLUMNS = (
    (PaymentModel, "id", "seller_token"),
    (PaymentModel, "id", "minted_token"),
    (ChangeProofModel, "id", "ciphertext"),
    (PendingMeltModel, "id", "proofs_snapshot"),
)


class VaultService:
    """Refuses to start on undecryptable rows, then encrypts leftovers."""

    def __init__(self, vault: TokenVault):
        self.vault = vault

    async def verify_integrity(self, session: AsyncSession) -> int:
        """Trial-decrypt every encrypted value. Returns the number checked."""
        checked = 0
        for model, pk_name, column_name in VAULTED_COLUMNS:
            pk = getattr(model, pk_name)
            column = getattr(model, column_name)
            result = await session.execute(select(pk, column).where(column.is_not(None)))
            for row_id, value in result.all():
                if self.vault.is_plaintext(value):
                    continue
                try:
                    self.vault.decrypt(value)
                except VaultError as exc:
                    raise ConfigurationError(
                        f"Cannot decrypt {model.__tablename__}.{column_name} for row "
                        f"{row_id}: {exc.message}. Was STASHU_TOKEN_ENCRYPTION_KEY rotated? "
                        "Refusing to start."
                    ) from exc
                checked += 1
        return checked

    async def migrate_plaintext(self, session: AsyncSession) -> int:
        """Encrypt every remaining plaintext token. Caller owns the transaction."""
        migrated = 0
        for model, pk_name, column_name in VAULTED_COLUMNS:
            pk = getattr(model, pk_name)
            column = getattr(model, column_name)
            result = await session.execute(
                select(pk, column).where(column.like("cashu%"))
            )
            for row_id, value in result.all():
                await session.execute(
                    update(model)
                    .where(pk == row_id)
                    .values({column_name: self.vault.encrypt(value)})
                )
                migrated += 1
        return migrated

    async def startup(self, db: DatabaseManager) -> dict:
        async with db.get_session() as session:
            checked = await self.verify_integrity(session)
        logger.info("Vault integrity check passed (%d encrypted values)", checked)

        # Single transaction: either every plaintext row is rewritten or none is
        async with db.get_session() as session:
            migrated = await self.migrate_plaintext(session)
        if migrated:
            logger.info("Encrypted %d legacy plaintext token(s)", migrated)
        return {"checked": checked, "migrated": migrated}
