"""HTTP client for the SumUp hosted-checkout API."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Mapping

import httpx
from loguru import logger

from orderflow_api.core.errors import (
    DuplicateCheckoutError,
    PaymentProviderError,
    PaymentProviderUnavailable,
)
from orderflow_api.core.settings import Settings, settings

PAID_STATUSES = frozenset({"PAID", "SUCCESSFUL"})
FAILED_STATUSES = frozenset({"FAILED", "EXPIRED", "CANCELLED", "CANCELED"})
DUPLICATE_CHECKOUT_CODE = "DUPLICATED_CHECKOUT"
HOSTED_CHECKOUT_FALLBACK_URL = "https://checkout.sumup.com/pay/{checkout_id}"
_TOKEN_REFRESH_MARGIN_SECONDS = 60


def hosted_checkout_fallback_url(checkout_id: str) -> str:
    return HOSTED_CHECKOUT_FALLBACK_URL.format(checkout_id=checkout_id)


@dataclass(slots=True)
class ProviderCheckout:
    """Normalized view over a provider checkout payload."""

    id: str
    status: str
    reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    hosted_checkout_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProviderCheckout":
        checkout_id = payload.get("id") or payload.get("checkout_id")
        if not checkout_id:
            raise PaymentProviderError("Checkout payload is missing an id", payload=payload)
        amount = payload.get("amount")
        return cls(
            id=str(checkout_id),
            status=str(payload.get("status") or "PENDING").upper(),
            reference=payload.get("checkout_reference"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=payload.get("currency"),
            hosted_checkout_url=payload.get("hosted_checkout_url"),
            raw=dict(payload),
        )

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status in FAILED_STATUSES

    @property
    def checkout_url(self) -> str:
        return self.hosted_checkout_url or hosted_checkout_fallback_url(self.id)


def _normalize_error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    if isinstance(body, list):
        body = next((item for item in body if isinstance(item, Mapping)), {})
    return dict(body) if isinstance(body, Mapping) else {"message": str(body)}


def _is_duplicate(status_code: int, payload: Mapping[str, Any]) -> bool:
    code = str(payload.get("error_code") or payload.get("error") or "")
    message = str(payload.get("message") or "")
    return code == DUPLICATE_CHECKOUT_CODE or DUPLICATE_CHECKOUT_CODE in message or status_code == 409


class SumUpGateway:
    """Token-authenticated SumUp client with bounded timeouts.

    Transport failures, timeouts, 5xx answers, and missing credentials raise
    ``PaymentProviderUnavailable``; other rejections raise
    ``PaymentProviderError`` (or ``DuplicateCheckoutError`` for reused references).
    """

    def __init__(
        self,
        *,
        base_url: str,
        client_id: str,
        client_secret: str,
        merchant_email: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self.merchant_email = merchant_email
        self._timeout = timeout_seconds
        self._http_client = http_client
        self._owns_client = http_client is None
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, config: Settings = settings, *, http_client: httpx.AsyncClient | None = None) -> "SumUpGateway":
        return cls(
            base_url=config.sumup_api_base_url,
            client_id=config.sumup_client_id,
            client_secret=config.sumup_client_secret,
            merchant_email=config.sumup_merchant_email,
            timeout_seconds=config.provider_timeout_seconds,
            http_client=http_client,
        )

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self.merchant_email)

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def create_checkout(
        self,
        *,
        reference: str,
        amount: Decimal,
        currency: str,
        description: str,
        redirect_url: str | None = None,
        custom_fields: Mapping[str, str] | None = None,
    ) -> ProviderCheckout:
        body: dict[str, Any] = {
            "checkout_reference": reference,
            "amount": float(amount),
            "currency": currency,
            "pay_to_email": self.merchant_email,
            "description": description,
            "hosted_checkout": {"enabled": True},
        }
        if redirect_url:
            body["redirect_url"] = redirect_url
        if custom_fields:
            body["custom_fields"] = dict(custom_fields)
        payload = await self._request("POST", "/v0.1/checkouts", json=body)
        checkout = ProviderCheckout.from_payload(payload)
        logger.info("SumUp checkout created", checkout_id=checkout.id, reference=reference)
        return checkout

    async def get_checkout(self, checkout_id: str) -> ProviderCheckout:
        payload = await self._request("GET", f"/v0.1/checkouts/{checkout_id}")
        return ProviderCheckout.from_payload(payload)

    async def list_checkouts(self, *, limit: int = 10) -> list[ProviderCheckout]:
        payload = await self._request("GET", "/v0.1/checkouts", params={"limit": limit})
        items = payload.get("items", []) if isinstance(payload, Mapping) else payload
        checkouts: list[ProviderCheckout] = []
        for item in items or []:
            if isinstance(item, Mapping) and (item.get("id") or item.get("checkout_id")):
                checkouts.append(ProviderCheckout.from_payload(item))
        return checkouts

    async def get_merchant_profile(self) -> dict[str, Any]:
        payload = await self._request("GET", "/v0.1/me")
        return dict(payload) if isinstance(payload, Mapping) else {"profile": payload}

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            payload = await self._send(
                "POST",
                "/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
            token = payload.get("access_token") if isinstance(payload, Mapping) else None
            if not token:
                raise PaymentProviderError("SumUp token response did not include an access token", payload=payload)
            expires_in = int(payload.get("expires_in") or 0)
            self._token = str(token)
            self._token_expires_at = time.monotonic() + max(expires_in - _TOKEN_REFRESH_MARGIN_SECONDS, 0)
            return self._token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        if not self.configured:
            raise PaymentProviderUnavailable("SumUp credentials are not configured")
        token = await self._access_token()
        try:
            return await self._send(
                method,
                path,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except PaymentProviderError as exc:
            if exc.status_code == 401:
                self._token = None
                self._token_expires_at = 0.0
            raise

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        client = self._client()
        try:
            response = await client.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("SumUp request timed out", method=method, url=url)
            raise PaymentProviderUnavailable(f"SumUp request timed out: {method} {path}", url=url) from exc
        except httpx.HTTPError as exc:
            logger.warning("SumUp request failed", method=method, url=url, error=str(exc))
            raise PaymentProviderUnavailable(f"SumUp unreachable: {exc}", url=url) from exc

        if response.status_code >= 500:
            payload = _normalize_error_payload(response)
            logger.error("SumUp server error", method=method, url=url, status_code=response.status_code, payload=payload)
            raise PaymentProviderUnavailable(
                f"SumUp responded with {response.status_code}",
                status_code=response.status_code,
                payload=payload,
                url=url,
            )
        if response.status_code >= 400:
            payload = _normalize_error_payload(response)
            logger.error("SumUp rejected request", method=method, url=url, status_code=response.status_code, payload=payload)
            error_cls = DuplicateCheckoutError if _is_duplicate(response.status_code, payload) else PaymentProviderError
            raise error_cls(
                f"SumUp responded with {response.status_code}",
                status_code=response.status_code,
                payload=payload,
                url=url,
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise PaymentProviderError("SumUp returned a non-JSON body", status_code=response.status_code, url=url) from exc

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client


@lru_cache
def get_default_gateway() -> SumUpGateway:
    return SumUpGateway.from_settings(settings)


__all__ = [
    "FAILED_STATUSES",
    "PAID_STATUSES",
    "ProviderCheckout",
    "SumUpGateway",
    "get_default_gateway",
    "hosted_checkout_fallback_url",
]
