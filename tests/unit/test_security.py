"""Tests for NIP-98 authentication."""

import base64
import json
import time

import pytest
from coincurve import PrivateKey, PublicKeyXOnly

from stashu_engine.common.exceptions import ForbiddenError, UnauthorizedError
from stashu_engine.common.security import (
    NostrAuthenticator,
    SchnorrEventVerifier,
    ensure_owner,
    event_id,
)

from tests.conftest import OTHER_SELLER, SELLER, FakeVerifier, nostr_header

URL = "http://test/api/earnings/" + SELLER
NOW = 1_700_000_000


@pytest.fixture
def auth():
    return NostrAuthenticator(FakeVerifier(), max_age_seconds=60, clock=lambda: NOW)


def header(**kwargs) -> str:
    kwargs.setdefault("created_at", NOW)
    return nostr_header(URL, "GET", **kwargs)["Authorization"]


def signed_event(secret: bytes, **overrides) -> dict:
    event = {
        "pubkey": PublicKeyXOnly.from_secret(secret).format().hex(),
        "created_at": int(time.time()),
        "kind": 27235,
        "tags": [["u", URL], ["method", "GET"]],
        "content": "",
    }
    event.update(overrides)
    event["id"] = event_id(event)
    event["sig"] = PrivateKey(secret).sign_schnorr(bytes.fromhex(event["id"])).hex()
    return event


class TestNostrAuthenticator:
    def test_valid_header_returns_pubkey(self, auth):
        assert auth.authenticate(header(), URL, "GET") == SELLER

    def test_host_may_differ(self, auth):
        assert auth.authenticate(header(), "https://stashu.example/api/earnings/" + SELLER, "get") == SELLER

    @pytest.mark.parametrize("value", [None, "", "Bearer abc", "Nostr !!!", "Nostr " + base64.b64encode(b"[1]").decode()])
    def test_malformed_header(self, auth, value):
        with pytest.raises(UnauthorizedError):
            auth.authenticate(value, URL, "GET")

    def test_wrong_kind(self, auth):
        with pytest.raises(UnauthorizedError, match="kind"):
            auth.authenticate(header(kind=1), URL, "GET")

    def test_bad_signature(self, auth):
        with pytest.raises(UnauthorizedError, match="signature"):
            auth.authenticate(header(sig="bad"), URL, "GET")

    @pytest.mark.parametrize("skew", [-61, 61])
    def test_stale_or_future_event(self, auth, skew):
        with pytest.raises(UnauthorizedError, match="expired"):
            auth.authenticate(header(created_at=NOW + skew), URL, "GET")

    def test_within_window(self, auth):
        assert auth.authenticate(header(created_at=NOW - 59), URL, "GET") == SELLER

    def test_url_mismatch(self, auth):
        with pytest.raises(UnauthorizedError, match="URL"):
            auth.authenticate(header(), "http://test/api/earnings/" + OTHER_SELLER, "GET")

    def test_method_mismatch(self, auth):
        with pytest.raises(UnauthorizedError, match="Method"):
            auth.authenticate(header(), URL, "POST")

    def test_missing_tags(self, auth):
        event = {"pubkey": SELLER, "created_at": NOW, "kind": 27235, "tags": [], "content": "", "sig": "ok"}
        value = "Nostr " + base64.b64encode(json.dumps(event).encode()).decode()
        with pytest.raises(UnauthorizedError, match="URL tag"):
            auth.authenticate(value, URL, "GET")

    @pytest.mark.parametrize("tags", [5, "u", {"u": URL}, None])
    def test_non_list_tags(self, auth, tags):
        event = {"pubkey": SELLER, "created_at": NOW, "kind": 27235, "tags": tags, "content": "", "sig": "ok"}
        value = "Nostr " + base64.b64encode(json.dumps(event).encode()).decode()
        with pytest.raises(UnauthorizedError, match="Invalid authorization event"):
            auth.authenticate(value, URL, "GET")

    def test_non_string_url_tag(self, auth):
        event = {"pubkey": SELLER, "created_at": NOW, "kind": 27235, "tags": [["u", 5]], "content": "", "sig": "ok"}
        value = "Nostr " + base64.b64encode(json.dumps(event).encode()).decode()
        with pytest.raises(UnauthorizedError, match="URL tag"):
            auth.authenticate(value, URL, "GET")


class TestSchnorrEventVerifier:
    def test_accepts_real_signature(self):
        event = signed_event(b"\x01" * 32)
        assert SchnorrEventVerifier().verify(event) is True

    def test_rejects_tampered_content(self):
        event = signed_event(b"\x01" * 32)
        event["content"] = "changed"
        assert SchnorrEventVerifier().verify(event) is False

    def test_rejects_other_key(self):
        event = signed_event(b"\x01" * 32)
        event["sig"] = signed_event(b"\x02" * 32)["sig"]
        assert SchnorrEventVerifier().verify(event) is False

    @pytest.mark.parametrize("field,value", [("pubkey", "xyz"), ("sig", "00"), ("pubkey", None)])
    def test_rejects_malformed_fields(self, field, value):
        event = signed_event(b"\x01" * 32)
        event[field] = value
        assert SchnorrEventVerifier().verify(event) is False

    def test_end_to_end_with_real_verifier(self):
        event = signed_event(b"\x03" * 32)
        value = "Nostr " + base64.b64encode(json.dumps(event).encode()).decode()
        auth = NostrAuthenticator(SchnorrEventVerifier())
        assert auth.authenticate(value, URL, "GET") == event["pubkey"]


class TestEnsureOwner:
    def test_same_pubkey(self):
        ensure_owner(SELLER, SELLER)

    def test_other_pubkey(self):
        with pytest.raises(ForbiddenError):
            ensure_owner(SELLER, OTHER_SELLER)
