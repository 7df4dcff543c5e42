"""Async Helius API client: webhook subscriptions and initial backfill data."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from src.indexing.errors import UNKNOWN_ERROR_MESSAGE, UpstreamProviderError
from src.indexing.models import IndexingJob, JobType
from src.utils.config import (
    get_helius_api_base_url,
    get_helius_api_key,
    get_helius_webhook_base_url,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
SUCCESS_STATUS_MIN = 200
SUCCESS_STATUS_MAX = 299

MAGIC_EDEN_PROGRAM_ID = "MEisE1HzehtrDpAAT8PnLHjpSSkRYakotTuJRPjTpo8"
TENSOR_PROGRAM_ID = "hausS13jsjafwWwGqZTUQRmWyvyxn9EQpqMwV1PBBmk"
NFT_MARKETPLACE_PROGRAM_IDS = [MAGIC_EDEN_PROGRAM_ID, TENSOR_PROGRAM_ID]

TRANSACTION_TYPES: dict[str, list[str]] = {
    JobType.NFT_BIDS.value: ["NFT_BID"],
    JobType.NFT_PRICES.value: ["NFT_LISTING", "NFT_SALE"],
    JobType.TOKEN_BORROWING.value: ["TOKEN_TRANSFER", "SWAP", "UNKNOWN"],
    JobType.TOKEN_PRICES.value: ["SWAP", "UNKNOWN"],
}

# nft-events `type` query value for job types that have a backfill source
NFT_EVENT_TYPES: dict[str, str] = {
    JobType.NFT_BIDS.value: "bid",
    JobType.NFT_PRICES.value: "listing",
}


class HeliusAPIError(UpstreamProviderError):
    """A Helius API call failed."""

    def __init__(
        self, message: str, *, status_code: int | None = None, response_body: Any | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


@dataclass
class SubscriptionResult:
    success: bool
    subscription_id: str | None = None
    error: str | None = None


class HeliusClient:
    """Thin async wrapper around the Helius REST API.

    Subscription calls never raise; they log and return a SubscriptionResult.
    """

    def __init__(
        self,
        *,
        api_key: str,
        webhook_base_url: str,
        api_base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        if not webhook_base_url:
            raise ValueError("webhook_base_url is required")

        normalized_base = api_base_url.rstrip("/")
        self._api_key = api_key
        self._webhook_base_url = webhook_base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=normalized_base,
            headers={"Accept": "application/json", "User-Agent": "chainsink-helius-client/1.0"},
            timeout=timeout_seconds,
        )

    async def __aenter__(self) -> HeliusClient:
        return self

    async def __aexit__(self, _exc_type, _exc, _tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def webhook_url_for_job(self, job_id: str) -> str:
        return f"{self._webhook_base_url}/{job_id}"

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def create_subscription(self, job: IndexingJob) -> SubscriptionResult:
        """Register an enhanced-transaction webhook for the job.

        The target URL is a placeholder until the job id is attached with
        update_subscription_target().
        """
        body = {
            "webhookURL": f"{self._webhook_base_url}/placeholder",
            "transactionTypes": TRANSACTION_TYPES.get(job.type, ["UNKNOWN"]),
            "accountAddresses": self._account_addresses(job),
            "webhookType": "enhanced",
        }
        try:
            data = await self._request("POST", "/webhooks", json=body)
        except HeliusAPIError as e:
            return self._failed("create", e, job_id=job.id)

        subscription_id = data.get("webhookID") if isinstance(data, dict) else None
        if not subscription_id:
            logger.error("Helius create webhook response missing webhookID", job_id=job.id)
            return SubscriptionResult(success=False, error="Helius response missing webhookID")

        logger.info("Created Helius webhook", job_id=job.id, webhook_id=subscription_id)
        return SubscriptionResult(success=True, subscription_id=subscription_id)

    async def update_subscription_target(
        self, subscription_id: str, job_id: str
    ) -> SubscriptionResult:
        try:
            await self._request(
                "PUT",
                f"/webhooks/{subscription_id}",
                json={"webhookURL": self.webhook_url_for_job(job_id)},
            )
        except HeliusAPIError as e:
            return self._failed("update", e, webhook_id=subscription_id, job_id=job_id)
        return SubscriptionResult(success=True, subscription_id=subscription_id)

    async def pause_subscription(self, subscription_id: str) -> SubscriptionResult:
        try:
            await self._request("POST", f"/webhooks/{subscription_id}/pause")
        except HeliusAPIError as e:
            return self._failed("pause", e, webhook_id=subscription_id)
        return SubscriptionResult(success=True, subscription_id=subscription_id)

    async def resume_subscription(self, subscription_id: str) -> SubscriptionResult:
        try:
            await self._request("POST", f"/webhooks/{subscription_id}/resume")
        except HeliusAPIError as e:
            return self._failed("resume", e, webhook_id=subscription_id)
        return SubscriptionResult(success=True, subscription_id=subscription_id)

    async def delete_subscription(self, subscription_id: str) -> SubscriptionResult:
        try:
            await self._request("DELETE", f"/webhooks/{subscription_id}")
        except HeliusAPIError as e:
            return self._failed("delete", e, webhook_id=subscription_id)
        return SubscriptionResult(success=True, subscription_id=subscription_id)

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------
    async def fetch_initial_dataset(self, job: IndexingJob) -> list[dict[str, Any]]:
        """Fetch current state for a new job. Never raises; returns [] on failure.

        Only NFT job types have a backfill source. Each configured collection is fetched
        separately and a failing collection is skipped.
        """
        event_type = NFT_EVENT_TYPES.get(job.type)
        if event_type is None:
            return []

        collections = job.config.get("collections") or []
        party_field = "bidder" if job.type == JobType.NFT_BIDS.value else "seller"
        results: list[dict[str, Any]] = []
        try:
            for collection in collections:
                try:
                    data = await self._request(
                        "GET",
                        "/nft-events",
                        params={"collection": collection, "type": event_type},
                    )
                except HeliusAPIError as e:
                    logger.error(
                        "Failed to fetch initial data for collection",
                        job_id=job.id,
                        collection=collection,
                        error=str(e),
                    )
                    continue

                if not isinstance(data, list):
                    continue
                for event in data:
                    if isinstance(event, dict):
                        results.append(self._normalize_nft_event(event, party_field))
        except Exception as e:
            logger.error("Failed to fetch initial data", job_id=job.id, error=str(e), exc_info=True)
            return []

        logger.info("Fetched initial data", job_id=job.id, record_count=len(results))
        return results

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _account_addresses(job: IndexingJob) -> list[str]:
        if job.type in (JobType.NFT_BIDS.value, JobType.NFT_PRICES.value):
            return list(NFT_MARKETPLACE_PROGRAM_IDS)
        tokens = job.config.get("tokens")
        if isinstance(tokens, list):
            return [str(token) for token in tokens]
        return []

    @staticmethod
    def _normalize_nft_event(event: dict[str, Any], party_field: str) -> dict[str, Any]:
        record = {
            "collection": event.get("collection"),
            "mint": event.get("mint"),
            "price": event.get("price", event.get("amount")),
            "marketplace": event.get("marketplace"),
            party_field: event.get(party_field),
        }
        if party_field == "bidder":
            record["expiry"] = event.get("expiry")
        return record

    def _failed(self, action: str, error: HeliusAPIError, **fields: Any) -> SubscriptionResult:
        logger.error(
            f"Failed to {action} Helius webhook",
            status_code=error.status_code,
            response_body=error.response_body,
            error=str(error),
            **fields,
        )
        return SubscriptionResult(success=False, error=str(error) or UNKNOWN_ERROR_MESSAGE)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        query = {"api-key": self._api_key, **(params or {})}
        try:
            response = await self._client.request(method, path, params=query, json=json)
        except httpx.HTTPError as exc:
            raise HeliusAPIError(f"Helius request failed: {exc}") from exc

        if not SUCCESS_STATUS_MIN <= response.status_code <= SUCCESS_STATUS_MAX:
            body = self._safe_get_content(response)
            message = body.get("message") if isinstance(body, dict) else None
            raise HeliusAPIError(
                message or f"Helius API request failed with status {response.status_code}",
                status_code=response.status_code,
                response_body=body,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise HeliusAPIError(
                "Failed to parse Helius JSON response",
                status_code=response.status_code,
                response_body=response.text,
            ) from exc

    @staticmethod
    def _safe_get_content(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text


def create_helius_client() -> HeliusClient:
    """Build a client from HELIUS_* environment configuration."""
    api_key = get_helius_api_key()
    webhook_base_url = get_helius_webhook_base_url()
    if not api_key:
        raise ValueError("HELIUS_API_KEY is required")
    if not webhook_base_url:
        raise ValueError("HELIUS_WEBHOOK_BASE_URL is required")
    return HeliusClient(
        api_key=api_key,
        webhook_base_url=webhook_base_url,
        api_base_url=get_helius_api_base_url(),
    )
