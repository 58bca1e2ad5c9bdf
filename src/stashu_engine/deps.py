"""Service container for Stashu-Engine.

Everything is constructed once by ``build_services`` and attached to
``app.state``; routers reach it through the ``get_services`` dependency.
"""

import logging
from dataclasses import dataclass

from fastapi import Request

from stashu_engine.common.config import StashuSettings
from stashu_engine.common.database import DatabaseManager
from stashu_engine.common.ratelimit import RateLimiter, RateLimitStore
from stashu_engine.common.security import (
    NostrAuthenticator,
    SchnorrEventVerifier,
    SignatureVerifier,
)
from stashu_engine.common.tasks import TaskSupervisor
from stashu_engine.ecash.client import EcashClient
from stashu_engine.ecash.custody import CustodyService
from stashu_engine.ecash.wallet import MintWallet
from stashu_engine.payments.service import PaymentService
from stashu_engine.recovery.service import ReconcileReport, Reconciler
from stashu_engine.settlement.lnaddress import InvoiceResolver, LightningAddressResolver
from stashu_engine.settlement.service import SettlementService
from stashu_engine.stashes.service import StashService
from stashu_engine.vault.cipher import TokenVault
from stashu_engine.vault.service import VaultService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: StashuSettings
    db: DatabaseManager
    vault: TokenVault
    vault_service: VaultService
    supervisor: TaskSupervisor
    client: EcashClient
    custody: CustodyService
    stashes: StashService
    payments: PaymentService
    settlement: SettlementService
    reconciler: Reconciler
    authenticator: NostrAuthenticator
    limiter: RateLimiter


def build_services(
    settings: StashuSettings,
    wallet: MintWallet | None = None,
    resolver: InvoiceResolver | None = None,
    verifier: SignatureVerifier | None = None,
    rate_limit_store: RateLimitStore | None = None,
) -> Services:
    """Wire the object graph. Raises ConfigurationError on an unusable vault key.

    ``wallet`` may be None here; ``startup`` connects the nutshell wallet in
    that case.
    """
    vault = TokenVault(settings.encryption_key_bytes)
    db = DatabaseManager(settings)
    supervisor = TaskSupervisor()
    client = EcashClient(wallet, timeout=settings.mint_timeout_seconds)
    custody = CustodyService(db, client, vault)
    settlement = SettlementService(
        settings, db, custody,
        resolver or LightningAddressResolver(timeout=settings.lnurl_timeout_seconds),
        supervisor=supervisor,
    )
    payments = PaymentService(settings, db, client, vault, on_paid=settlement.schedule)
    return Services(
        settings=settings,
        db=db,
        vault=vault,
        vault_service=VaultService(vault),
        supervisor=supervisor,
        client=client,
        custody=custody,
        stashes=StashService(),
        payments=payments,
        settlement=settlement,
        reconciler=Reconciler(settings, db, custody, payments),
        authenticator=NostrAuthenticator(
            verifier or SchnorrEventVerifier(),
            max_age_seconds=settings.auth_max_age_seconds,
        ),
        limiter=RateLimiter(settings, store=rate_limit_store),
    )


async def connect_wallet(services: Services) -> None:
    if services.client.wallet is not None:
        return
    # Optional dependency, installed with the "mint" extra
    from stashu_engine.ecash.nutshell import NutshellWallet

    settings = services.settings
    services.client.wallet = await NutshellWallet.connect(
        settings.mint_url, settings.wallet_db_path, unit=settings.mint_unit,
    )


async def startup(services: Services, timers: bool = True) -> ReconcileReport:
    """Bring the engine up: schema, vault checks, mint, reconciliation, timers.

    Vault failures raise and abort startup; reconciliation never does.
    """
    settings = services.settings
    await services.db.init()
    await services.db.create_all()
    await services.vault_service.startup(services.db)
    await connect_wallet(services)

    report = await services.reconciler.run()

    if timers:
        services.supervisor.every(
            settings.cleanup_interval_seconds,
            services.payments.cleanup_stale,
            name="payment-cleanup",
        )
        services.supervisor.every(
            settings.ratelimit_cleanup_interval_seconds,
            services.limiter.evict_expired,
            name="ratelimit-eviction",
        )
        services.supervisor.start()
    logger.info("Stashu-Engine ready (mint: %s)", settings.mint_url)
    return report


async def shutdown(services: Services) -> None:
    await services.supervisor.shutdown()
    await services.db.close()


def get_services(request: Request) -> Services:
    return request.app.state.services
