"""Tests for the Helius webhook and backfill client."""

import json

import httpx
import pytest

from src.clients.helius import (
    MAGIC_EDEN_PROGRAM_ID,
    TENSOR_PROGRAM_ID,
    HeliusClient,
    create_helius_client,
)
from tests.mock_utils import make_job

API_BASE_URL = "https://api.helius.xyz/v0"
WEBHOOK_BASE_URL = "https://hooks.example.com/webhooks"


def make_client(handler, requests: list[httpx.Request] | None = None) -> HeliusClient:
    def recording_handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    http_client = httpx.AsyncClient(
        base_url=API_BASE_URL, transport=httpx.MockTransport(recording_handler)
    )
    return HeliusClient(
        api_key="test-key",
        webhook_base_url=WEBHOOK_BASE_URL,
        api_base_url=API_BASE_URL,
        http_client=http_client,
    )


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_create_nft_subscription(self):
        requests: list[httpx.Request] = []
        client = make_client(lambda request: httpx.Response(200, json={"webhookID": "wh-1"}), requests)

        result = await client.create_subscription(make_job(type="nft_bids"))

        assert result.success is True
        assert result.subscription_id == "wh-1"
        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v0/webhooks"
        assert request.url.params["api-key"] == "test-key"
        assert json.loads(request.content) == {
            "webhookURL": f"{WEBHOOK_BASE_URL}/placeholder",
            "transactionTypes": ["NFT_BID"],
            "accountAddresses": [MAGIC_EDEN_PROGRAM_ID, TENSOR_PROGRAM_ID],
            "webhookType": "enhanced",
        }

    @pytest.mark.asyncio
    async def test_token_subscription_watches_configured_tokens(self):
        requests: list[httpx.Request] = []
        client = make_client(lambda request: httpx.Response(200, json={"webhookID": "wh-2"}), requests)
        job = make_job(type="token_prices", config={"tableName": "prices", "tokens": ["TokenA"]})

        await client.create_subscription(job)

        body = json.loads(requests[0].content)
        assert body["transactionTypes"] == ["SWAP", "UNKNOWN"]
        assert body["accountAddresses"] == ["TokenA"]

    @pytest.mark.asyncio
    async def test_create_failure_uses_provider_message(self):
        client = make_client(
            lambda request: httpx.Response(400, json={"message": "invalid account address"})
        )

        result = await client.create_subscription(make_job())

        assert result.success is False
        assert result.error == "invalid account address"

    @pytest.mark.asyncio
    async def test_missing_webhook_id(self):
        client = make_client(lambda request: httpx.Response(200, json={}))

        result = await client.create_subscription(make_job())

        assert result.success is False

    @pytest.mark.asyncio
    async def test_update_target_points_at_job(self):
        requests: list[httpx.Request] = []
        client = make_client(lambda request: httpx.Response(200, json={"webhookID": "wh-1"}), requests)

        result = await client.update_subscription_target("wh-1", "job-1")

        assert result.success is True
        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/v0/webhooks/wh-1"
        assert json.loads(requests[0].content) == {"webhookURL": f"{WEBHOOK_BASE_URL}/job-1"}

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        requests: list[httpx.Request] = []
        client = make_client(lambda request: httpx.Response(200), requests)

        assert (await client.pause_subscription("wh-1")).success is True
        assert (await client.resume_subscription("wh-1")).success is True
        assert [(r.method, r.url.path) for r in requests] == [
            ("POST", "/v0/webhooks/wh-1/pause"),
            ("POST", "/v0/webhooks/wh-1/resume"),
        ]

    @pytest.mark.asyncio
    async def test_delete_never_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        result = await client.delete_subscription("wh-1")

        assert result.success is False
        assert "connection refused" in result.error


class TestInitialDataset:
    @pytest.mark.asyncio
    async def test_failing_collection_is_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["type"] == "bid"
            if request.url.params["collection"] == "broken":
                return httpx.Response(500, text="internal error")
            return httpx.Response(
                200,
                json=[
                    {
                        "collection": "mad_lads",
                        "mint": "m1",
                        "amount": 12,
                        "marketplace": "TENSOR",
                        "bidder": "b1",
                    }
                ],
            )

        client = make_client(handler)
        job = make_job(config={"tableName": "bids", "collections": ["broken", "mad_lads"]})

        records = await client.fetch_initial_dataset(job)

        assert records == [
            {
                "collection": "mad_lads",
                "mint": "m1",
                "price": 12,
                "marketplace": "TENSOR",
                "bidder": "b1",
                "expiry": None,
            }
        ]

    @pytest.mark.asyncio
    async def test_listings_use_seller(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["type"] == "listing"
            return httpx.Response(200, json=[{"mint": "m1", "price": 30, "seller": "s1"}])

        client = make_client(handler)
        job = make_job(type="nft_prices", config={"tableName": "prices", "collections": ["c"]})

        records = await client.fetch_initial_dataset(job)

        assert records[0]["seller"] == "s1"
        assert records[0]["price"] == 30
        assert "bidder" not in records[0]

    @pytest.mark.asyncio
    async def test_token_types_have_no_backfill(self):
        requests: list[httpx.Request] = []
        client = make_client(lambda request: httpx.Response(200, json=[]), requests)

        job = make_job(type="token_borrowing", config={"tableName": "rates"})

        assert await client.fetch_initial_dataset(job) == []
        assert requests == []


class TestCreateHeliusClient:
    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("HELIUS_API_KEY", raising=False)
        monkeypatch.setenv("HELIUS_WEBHOOK_BASE_URL", WEBHOOK_BASE_URL)

        with pytest.raises(ValueError, match="HELIUS_API_KEY"):
            create_helius_client()

    def test_requires_webhook_base_url(self, monkeypatch):
        monkeypatch.setenv("HELIUS_API_KEY", "key")
        monkeypatch.delenv("HELIUS_WEBHOOK_BASE_URL", raising=False)

        with pytest.raises(ValueError, match="HELIUS_WEBHOOK_BASE_URL"):
            create_helius_client()

    def test_webhook_url_for_job(self, monkeypatch):
        monkeypatch.setenv("HELIUS_API_KEY", "key")
        monkeypatch.setenv("HELIUS_WEBHOOK_BASE_URL", f"{WEBHOOK_BASE_URL}/")

        client = create_helius_client()

        assert client.webhook_url_for_job("job-1") == f"{WEBHOOK_BASE_URL}/job-1"
