"""Third-party travel provider interfaces and their HTTP defaults.

Providers report three distinct failure kinds and the coordinator treats them
differently: ``ProviderRejected`` is final, ``ProviderUnavailable`` is safe to
retry with the same idempotency key, and ``ProviderTimeout`` means the outcome
is unknown and must be reconciled later.
"""
import logging
from dataclasses import dataclass, field
from typing import Protocol

import requests

from wayfare.core.config import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    pass


class ProviderRejected(ProviderError):
    """Explicit business decline (sold out, invalid fare...)."""


class ProviderUnavailable(ProviderError):
    """Transient failure; the call did not take effect."""


class ProviderTimeout(ProviderError):
    """No answer in time; the booking may or may not exist."""


PROVIDER_CONFIRMED = "confirmed"
PROVIDER_CANCELED = "canceled"
PROVIDER_FAILED = "failed"
PROVIDER_PENDING = "pending"


@dataclass
class ProviderBooking:
    status: str
    confirmation_ref: str | None = None
    schedule: dict = field(default_factory=dict)


class ProviderCatalog(Protocol):
    def get_current_price(self, offer_id: str) -> int | None:
        """Current unit price in cents, or None when the offer is gone."""


class ProviderBookingAdapter(Protocol):
    def book(self, item: dict, idempotency_key: str) -> str: ...

    def cancel(self, confirmation_ref: str) -> None: ...

    def get_status(self, confirmation_ref: str) -> ProviderBooking: ...

    def lookup(self, idempotency_key: str) -> ProviderBooking | None: ...


class ProviderRegistry:
    def __init__(self, adapters: dict[str, ProviderBookingAdapter] | None = None):
        self._adapters = dict(adapters or {})

    def register(self, provider_id: str, adapter: ProviderBookingAdapter) -> None:
        self._adapters[provider_id] = adapter

    def get(self, provider_id: str) -> ProviderBookingAdapter:
        try:
            return self._adapters[provider_id]
        except KeyError:
            raise ProviderRejected(f"No booking adapter configured for provider {provider_id!r}") from None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._adapters


def _auth_headers() -> dict:
    headers = {"Accept": "application/json"}
    if settings.PROVIDER_API_KEY:
        headers["Authorization"] = f"Bearer {settings.PROVIDER_API_KEY}"
    return headers


def _send(method: str, url: str, **kwargs) -> requests.Response:
    try:
        r = requests.request(method, url, timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS, **kwargs)
    except requests.Timeout as e:
        raise ProviderTimeout(f"{method} {url} timed out") from e
    except requests.RequestException as e:
        raise ProviderUnavailable(f"{method} {url} failed: {e}") from e
    if r.status_code >= 500 or r.status_code == 429:
        raise ProviderUnavailable(f"{method} {url} returned {r.status_code}")
    return r


def _json(r: requests.Response) -> dict:
    try:
        return r.json() if r.text else {}
    except ValueError:
        return {"raw": r.text}


class HttpProviderAdapter:
    """REST adapter: ``POST /bookings`` with an ``Idempotency-Key`` header."""

    def __init__(self, provider_id: str, base_url: str):
        self.provider_id = provider_id
        self.base_url = base_url.rstrip("/")

    def book(self, item: dict, idempotency_key: str) -> str:
        headers = {**_auth_headers(), "Idempotency-Key": idempotency_key}
        r = _send("POST", f"{self.base_url}/bookings", json=item, headers=headers)
        data = _json(r)
        if r.status_code >= 400:
            raise ProviderRejected(data.get("message") or f"{self.provider_id} rejected booking ({r.status_code})")
        ref = data.get("confirmation_ref") or data.get("id")
        if not ref:
            raise ProviderUnavailable(f"{self.provider_id} returned no confirmation reference")
        return str(ref)

    def cancel(self, confirmation_ref: str) -> None:
        r = _send("POST", f"{self.base_url}/bookings/{confirmation_ref}/cancel", headers=_auth_headers())
        if r.status_code >= 400:
            raise ProviderRejected(_json(r).get("message") or f"{self.provider_id} refused cancel ({r.status_code})")

    def get_status(self, confirmation_ref: str) -> ProviderBooking:
        r = _send("GET", f"{self.base_url}/bookings/{confirmation_ref}", headers=_auth_headers())
        if r.status_code >= 400:
            raise ProviderRejected(f"{self.provider_id} status lookup failed ({r.status_code})")
        return _to_provider_booking(_json(r), confirmation_ref)

    def lookup(self, idempotency_key: str) -> ProviderBooking | None:
        r = _send(
            "GET",
            f"{self.base_url}/bookings",
            params={"idempotency_key": idempotency_key},
            headers=_auth_headers(),
        )
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise ProviderRejected(f"{self.provider_id} lookup failed ({r.status_code})")
        data = _json(r)
        if not data:
            return None
        return _to_provider_booking(data, None)


def _to_provider_booking(data: dict, ref: str | None) -> ProviderBooking:
    return ProviderBooking(
        status=str(data.get("status") or PROVIDER_PENDING).lower(),
        confirmation_ref=data.get("confirmation_ref") or data.get("id") or ref,
        schedule=data.get("schedule") or {},
    )


class HttpProviderCatalog:
    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def get_current_price(self, offer_id: str) -> int | None:
        try:
            r = _send("GET", f"{self.base_url}/offers/{offer_id}/price", headers=_auth_headers())
        except ProviderTimeout as e:
            raise ProviderUnavailable(str(e)) from e
        if r.status_code in (404, 410):
            return None
        if r.status_code >= 400:
            raise ProviderUnavailable(f"catalog returned {r.status_code} for offer {offer_id}")
        data = _json(r)
        if data.get("available") is False:
            return None
        return int(data["price_cents"])


def build_provider_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider_id, base_url in settings.provider_endpoints().items():
        registry.register(provider_id, HttpProviderAdapter(provider_id, base_url))
    logger.info("provider_registry_built", extra={"providers": sorted(settings.provider_endpoints())})
    return registry


def build_catalog() -> HttpProviderCatalog:
    return HttpProviderCatalog(settings.CATALOG_URL)
