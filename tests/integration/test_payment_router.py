"""Integration tests for unlock (ecash) and pay (Lightning) endpoints."""

import pytest

from tests.conftest import SELLER


@pytest.fixture
async def stash(make_stash_for_app):
    return await make_stash_for_app(price_sats=500)


@pytest.fixture
def make_stash_for_app(app, client):
    services = app.state.services

    async def _make(price_sats=500):
        async with services.db.get_session() as session:
            return await services.stashes.create_stash(
                session, SELLER, price_sats, 1024,
                blob_url="https://blossom.test/blob", secret_key="key+nonce",
                title="Song", file_name="song.mp3",
            )
    return _make


class TestUnlockEndpoint:
    async def test_unlock(self, client, stash, wallet):
        resp = await client.post(f"/api/unlock/{stash.id}", json={"token": wallet.issue_token(500)})
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "data": {
                "secretKey": "key+nonce",
                "blobUrl": "https://blossom.test/blob",
                "fileName": "song.mp3",
            },
        }

    async def test_resubmit_same_token(self, client, stash, wallet):
        token = wallet.issue_token(500)
        first = await client.post(f"/api/unlock/{stash.id}", json={"token": token})
        second = await client.post(f"/api/unlock/{stash.id}", json={"token": token})
        assert first.json() == second.json()
        assert wallet.swap_calls == 1

    async def test_insufficient_value(self, client, stash, wallet):
        resp = await client.post(f"/api/unlock/{stash.id}", json={"token": wallet.issue_token(100)})
        assert resp.status_code == 400
        assert resp.json()["code"] == "INSUFFICIENT_VALUE"

    async def test_missing_token(self, client, stash):
        resp = await client.post(f"/api/unlock/{stash.id}", json={})
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION"

    async def test_mint_unreachable(self, client, stash, wallet):
        wallet.swap_error = ConnectionError("mint offline")
        resp = await client.post(f"/api/unlock/{stash.id}", json={"token": wallet.issue_token(500)})
        assert resp.status_code == 502
        assert resp.json()["code"] == "MINT_ERROR"

    async def test_unknown_stash(self, client, wallet):
        resp = await client.post("/api/unlock/missing", json={"token": wallet.issue_token(500)})
        assert resp.status_code == 404


class TestPayEndpoints:
    async def test_invoice_then_poll(self, client, stash, wallet):
        resp = await client.post(f"/api/pay/{stash.id}/invoice")
        assert resp.status_code == 200
        invoice = resp.json()["data"]
        assert invoice["amountSats"] == 500
        assert invoice["invoice"].startswith("lnbc")
        quote_id = invoice["quoteId"]

        status = await client.get(f"/api/pay/{stash.id}/status/{quote_id}")
        assert status.json()["data"]["paid"] is False
        assert status.json()["data"]["secretKey"] is None

        wallet.pay_invoice(quote_id)
        status = await client.get(f"/api/pay/{stash.id}/status/{quote_id}")
        data = status.json()["data"]
        assert data["paid"] is True
        assert data["secretKey"] == "key+nonce"
        assert data["blobUrl"] == "https://blossom.test/blob"

    async def test_quote_bound_to_stash(self, client, stash, make_stash_for_app):
        other = await make_stash_for_app()
        invoice = (await client.post(f"/api/pay/{stash.id}/invoice")).json()["data"]

        resp = await client.get(f"/api/pay/{other.id}/status/{invoice['quoteId']}")
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"

    async def test_unknown_quote(self, client, stash):
        resp = await client.get(f"/api/pay/{stash.id}/status/nope")
        assert resp.status_code == 404

    async def test_mint_failure_reports_retry(self, client, stash, wallet):
        invoice = (await client.post(f"/api/pay/{stash.id}/invoice")).json()["data"]
        wallet.pay_invoice(invoice["quoteId"])
        wallet.mint_error = ConnectionError("mint offline")

        resp = await client.get(f"/api/pay/{stash.id}/status/{invoice['quoteId']}")
        assert resp.status_code == 502
        assert "retried" in resp.json()["error"]


class TestRateLimit:
    async def test_unlock_quota(self, client, stash, wallet, settings):
        settings.rate_limit_quotas = {"/api/unlock": 2}

        for _ in range(2):
            resp = await client.post(f"/api/unlock/{stash.id}", json={"token": wallet.issue_token(500)})
            assert resp.status_code == 200

        resp = await client.post(f"/api/unlock/{stash.id}", json={"token": wallet.issue_token(500)})
        assert resp.status_code == 429
        assert resp.json() == {
            "success": False,
            "error": "Too many requests. Please try again later.",
            "code": "RATE_LIMITED",
        }

        # Health is outside the limited prefix
        assert (await client.get("/health")).status_code == 200
