"""NIP-98 HTTP authentication dependencies.

Protected endpoints expect ``Authorization: Nostr <base64 event>`` where the
event is a signed kind-27235 Nostr event carrying the request URL and method.
"""

import base64
import hashlib
import json
import re
import time
from typing import Callable, Protocol
from urllib.parse import urlsplit

from coincurve import PublicKeyXOnly
from fastapi import Header, Request

from stashu_engine.common.exceptions import ForbiddenError, UnauthorizedError

NIP98_KIND = 27235
AUTH_SCHEME = "Nostr "

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_HEX128 = re.compile(r"^[0-9a-f]{128}$")


def event_id(event: dict) -> str:
    """NIP-01 id: sha256 of the canonical serialization."""
    serialized = json.dumps(
        [0, event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class SignatureVerifier(Protocol):
    def verify(self, event: dict) -> bool: ...


class SchnorrEventVerifier:
    """BIP-340 Schnorr verification of a Nostr event over secp256k1."""

    def verify(self, event: dict) -> bool:
        pubkey = event.get("pubkey", "")
        sig = event.get("sig", "")
        if not isinstance(pubkey, str) or not _HEX64.match(pubkey):
            return False
        if not isinstance(sig, str) or not _HEX128.match(sig):
            return False
        if event.get("id") != event_id(event):
            return False
        try:
            key = PublicKeyXOnly(bytes.fromhex(pubkey))
            return key.verify(bytes.fromhex(sig), bytes.fromhex(event["id"]))
        except ValueError:
            return False


def _tag(event: dict, name: str) -> str | None:
    for tag in event["tags"]:
        if isinstance(tag, list) and len(tag) >= 2 and tag[0] == name and isinstance(tag[1], str):
            return tag[1]
    return None


class NostrAuthenticator:
    """Checks a NIP-98 header against the request it arrived on."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        max_age_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.verifier = verifier
        self.max_age_seconds = max_age_seconds
        self.clock = clock

    def authenticate(self, header: str | None, url: str, method: str) -> str:
        """Return the verified pubkey or raise UnauthorizedError."""
        if not header or not header.startswith(AUTH_SCHEME):
            raise UnauthorizedError("Authorization required")

        try:
            event = json.loads(base64.b64decode(header[len(AUTH_SCHEME):], validate=True))
        except (ValueError, TypeError) as exc:
            raise UnauthorizedError("Invalid authorization event") from exc
        if not isinstance(event, dict):
            raise UnauthorizedError("Invalid authorization event")

        if event.get("kind") != NIP98_KIND:
            raise UnauthorizedError(f"Invalid event kind (expected {NIP98_KIND})")
        if not isinstance(event.get("tags"), list):
            raise UnauthorizedError("Invalid authorization event")

        try:
            valid = self.verifier.verify(event)
        except (KeyError, TypeError, ValueError) as exc:
            raise UnauthorizedError("Signature verification failed") from exc
        if not valid:
            raise UnauthorizedError("Invalid signature")

        created_at = event.get("created_at")
        if not isinstance(created_at, int) or abs(self.clock() - created_at) > self.max_age_seconds:
            raise UnauthorizedError("Authorization expired")

        # Paths only: host and scheme differ between dev and production
        u_tag = _tag(event, "u")
        if not u_tag:
            raise UnauthorizedError("Missing URL tag in auth event")
        if urlsplit(u_tag).path != urlsplit(url).path:
            raise UnauthorizedError("URL mismatch in auth event")

        method_tag = _tag(event, "method")
        if not method_tag or method_tag.upper() != method.upper():
            raise UnauthorizedError("Method mismatch in auth event")

        return event["pubkey"]


async def require_pubkey(
    request: Request,
    authorization: str | None = Header(None),
) -> str:
    """FastAPI dependency returning the caller's verified pubkey."""
    from stashu_engine.deps import get_services

    services = get_services(request)
    return services.authenticator.authenticate(authorization, str(request.url), request.method)


def ensure_owner(authed_pubkey: str, pubkey: str) -> None:
    if authed_pubkey != pubkey:
        raise ForbiddenError("Pubkey does not match authenticated user")
