"""Shared test fixtures for Stashu-Engine."""

import asyncio
import base64
import json
import time
import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from stashu_engine.common.config import StashuSettings
from stashu_engine.ecash.wallet import (
    STATE_ISSUED,
    STATE_PAID,
    STATE_PENDING,
    STATE_UNPAID,
    DecodedToken,
    MeltQuote,
    MeltResponse,
    MintQuote,
    Proof,
)

ENCRYPTION_KEY = "a" * 64
MINT_URL = "https://mint.test"
SELLER = "ab" * 32
OTHER_SELLER = "cd" * 32


# ── Fake collaborators ──

def _split(amount: int) -> list[int]:
    """Power-of-two denominations, like a real mint keyset."""
    parts, bit = [], 1
    while amount:
        if amount & 1:
            parts.append(bit)
        amount >>= 1
        bit <<= 1
    return parts


class FakeWallet:
    """In-memory MintWallet with scriptable melt and mint behaviour."""

    def __init__(self, fee_reserve: int = 3):
        self.mint_url = MINT_URL
        self.fee_reserve = fee_reserve
        self.actual_fee: int | None = None
        self.valid: set[str] = set()
        self.spent: set[str] = set()
        self.melt_quotes: dict[str, MeltQuote] = {}
        self.mint_quotes: dict[str, MintQuote] = {}
        self.melt_behavior = "paid"  # paid | unpaid | pending | raise
        self.melt_state_after_raise = STATE_PENDING
        self.mint_error: Exception | None = None
        self.swap_error: Exception | None = None
        self.mint_delay = 0.0
        self.swap_calls = 0
        self.mint_calls = 0
        self.melt_calls = 0
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    def _issue(self, amount: int) -> list[Proof]:
        proofs = []
        for part in _split(amount):
            secret = uuid.uuid4().hex
            self.valid.add(secret)
            proofs.append(Proof(amount=part, secret=secret, C="02" + secret, id="00ad268c4d1f5826"))
        return proofs

    # Test helpers

    def issue_token(self, amount: int) -> str:
        return self.encode_token(self._issue(amount))

    def pay_invoice(self, quote_id: str) -> None:
        self.mint_quotes[quote_id].state = STATE_PAID

    # MintWallet

    def decode_token(self, token: str) -> DecodedToken:
        if not token.startswith("cashuA"):
            raise ValueError("unsupported token format")
        try:
            raw = base64.urlsafe_b64decode(token[len("cashuA"):] + "==")
            data = json.loads(raw)
            entry = data["token"][0]
            proofs = [Proof(**p) for p in entry["proofs"]]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"malformed token: {exc}") from exc
        return DecodedToken(mint=entry["mint"], proofs=proofs, unit=data.get("unit", "sat"))

    def encode_token(self, proofs: list[Proof]) -> str:
        data = {
            "token": [{
                "mint": self.mint_url,
                "proofs": [
                    {"amount": p.amount, "secret": p.secret, "C": p.C, "id": p.id} for p in proofs
                ],
            }],
            "unit": "sat",
        }
        encoded = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
        return "cashuA" + encoded

    def _spend(self, proofs: list[Proof]) -> None:
        for p in proofs:
            if p.secret not in self.valid:
                raise RuntimeError("unknown proof")
            if p.secret in self.spent:
                raise RuntimeError("Token already spent")
        self.spent.update(p.secret for p in proofs)

    async def swap(self, proofs: list[Proof]) -> list[Proof]:
        self.swap_calls += 1
        if self.swap_error is not None:
            raise self.swap_error
        self._spend(proofs)
        return self._issue(sum(p.amount for p in proofs))

    async def melt_quote(self, invoice: str) -> MeltQuote:
        # Fake invoices are "lnbc-<sats>-<nonce>"
        amount = int(invoice.split("-")[1])
        quote = MeltQuote(
            quote_id=self._next("melt-"),
            amount_sats=amount,
            fee_reserve_sats=self.fee_reserve,
        )
        self.melt_quotes[quote.quote_id] = quote
        return quote

    async def melt(self, proofs: list[Proof], quote: MeltQuote) -> MeltResponse:
        self.melt_calls += 1
        if self.melt_behavior == "raise":
            quote.state = self.melt_state_after_raise
            if quote.state == STATE_PAID:
                self._spend(proofs)
            raise ConnectionError("connection reset by mint")
        if self.melt_behavior == "unpaid":
            quote.state = STATE_UNPAID
            return MeltResponse(state=STATE_UNPAID)
        if self.melt_behavior == "pending":
            self._spend(proofs)
            quote.state = STATE_PENDING
            return MeltResponse(state=STATE_PENDING)

        self._spend(proofs)
        quote.state = STATE_PAID
        fee = quote.fee_reserve_sats if self.actual_fee is None else self.actual_fee
        change = sum(p.amount for p in proofs) - quote.amount_sats - fee
        return MeltResponse(
            state=STATE_PAID,
            preimage="00" * 32,
            change=self._issue(change) if change > 0 else [],
        )

    async def melt_quote_state(self, quote_id: str) -> str:
        return self.melt_quotes[quote_id].state

    async def mint_quote(self, amount_sats: int) -> MintQuote:
        quote_id = self._next("mint-")
        quote = MintQuote(
            quote_id=quote_id,
            invoice=f"lnbc-{amount_sats}-{quote_id}",
            amount_sats=amount_sats,
            expiry=int(time.time()) + 600,
        )
        self.mint_quotes[quote_id] = quote
        return quote

    async def mint_quote_state(self, quote_id: str) -> str:
        return self.mint_quotes[quote_id].state

    async def mint(self, amount_sats: int, quote_id: str) -> list[Proof]:
        self.mint_calls += 1
        if self.mint_delay:
            await asyncio.sleep(self.mint_delay)
        if self.mint_error is not None:
            raise self.mint_error
        quote = self.mint_quotes[quote_id]
        if quote.state != STATE_PAID:
            raise RuntimeError(f"quote {quote_id} is {quote.state}")
        quote.state = STATE_ISSUED
        return self._issue(amount_sats)


class FakeResolver:
    """Lightning address resolver that issues fake invoices."""

    def __init__(self):
        self.calls: list[tuple[str, int]] = []
        self.error: Exception | None = None

    async def resolve(self, address: str, amount_sats: int) -> str:
        self.calls.append((address, amount_sats))
        if self.error is not None:
            raise self.error
        return f"lnbc-{amount_sats}-{len(self.calls)}"


class FakeVerifier:
    """Accepts any signature except the literal "bad"."""

    def verify(self, event: dict) -> bool:
        return event.get("sig") != "bad"


def nostr_header(
    url: str,
    method: str,
    pubkey: str = SELLER,
    created_at: int | None = None,
    kind: int = 27235,
    sig: str = "ok",
) -> dict:
    event = {
        "id": "0" * 64,
        "pubkey": pubkey,
        "created_at": int(time.time()) if created_at is None else created_at,
        "kind": kind,
        "tags": [["u", url], ["method", method]],
        "content": "",
        "sig": sig,
    }
    encoded = base64.b64encode(json.dumps(event).encode()).decode()
    return {"Authorization": f"Nostr {encoded}"}


# ── Fixtures ──

@pytest.fixture
def settings(tmp_path):
    return StashuSettings(
        environment="test",
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'stashu.db'}",
        token_encryption_key=ENCRYPTION_KEY,
        mint_url=MINT_URL,
        mint_timeout_seconds=2.0,
        cors_origins=["http://localhost:5173"],
    )


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
async def services(settings, wallet, resolver):
    from stashu_engine.deps import build_services, shutdown, startup

    svc = build_services(settings, wallet=wallet, resolver=resolver, verifier=FakeVerifier())
    await startup(svc, timers=False)
    yield svc
    await shutdown(svc)


@pytest.fixture
def make_stash(services):
    async def _make(price_sats: int = 500, seller: str = SELLER, **overrides):
        fields = {
            "blob_url": "https://blossom.test/blob",
            "secret_key": "key+nonce",
            "title": "Song",
            "file_name": "song.mp3",
        }
        fields.update(overrides)
        async with services.db.get_session() as session:
            return await services.stashes.create_stash(
                session, seller, price_sats, 1024, **fields,
            )
    return _make


@pytest.fixture
def app(settings, wallet, resolver):
    from stashu_engine.app import create_app
    return create_app(settings, wallet=wallet, resolver=resolver, verifier=FakeVerifier())


@pytest.fixture
async def client(app):
    # Manually run startup since ASGITransport doesn't run lifespan
    from stashu_engine.deps import shutdown, startup

    services = app.state.services
    await startup(services, timers=False)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await shutdown(services)
