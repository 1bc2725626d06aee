"""Card network gateway interface and the Cybersource implementation."""
import logging
from dataclasses import dataclass
from typing import Protocol

import requests

from wayfare.core.config import settings
from wayfare.services.cybersource_client import CybersourceClient, CybersourceConfig, CybersourceError

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    pass


class GatewayDeclined(GatewayError):
    """Issuer or gateway refused the operation; retrying will not help."""


class GatewayUnavailable(GatewayError):
    """Transient; safe to retry with the same idempotency key."""


class GatewayTimeout(GatewayError):
    """Outcome unknown."""


@dataclass
class Authorization:
    intent_id: str
    status: str = "authorized"


class PaymentGateway(Protocol):
    def authorize(self, amount_cents: int, currency: str, idempotency_key: str, payment_token: str | None = None) -> Authorization: ...

    def capture(self, intent_id: str, amount_cents: int, currency: str, idempotency_key: str) -> None: ...

    def void(self, intent_id: str, amount_cents: int, currency: str) -> None: ...

    def refund(self, intent_id: str, amount_cents: int, currency: str, idempotency_key: str) -> str: ...


_DECLINED_STATUSES = ("DECLINED", "REJECTED", "FAILED", "INVALID_REQUEST")


class CybersourceGateway:
    def __init__(self, client: CybersourceClient | None, sandbox: bool = False):
        self.client = client
        self.sandbox = sandbox

    def _call(self, operation: str, fn):
        try:
            resp = fn()
        except requests.Timeout as e:
            raise GatewayTimeout(f"{operation} timed out") from e
        except requests.RequestException as e:
            raise GatewayUnavailable(f"{operation} failed: {e}") from e
        except CybersourceError as e:
            if e.status_code >= 500 or e.status_code == 429:
                raise GatewayUnavailable(str(e)) from e
            raise GatewayDeclined(str(e)) from e
        status = str(resp.get("status") or "").upper()
        if status in _DECLINED_STATUSES:
            reason = (resp.get("errorInformation") or {}).get("reason") or status
            raise GatewayDeclined(f"{operation} {status.lower()}: {reason}")
        return resp

    def authorize(self, amount_cents: int, currency: str, idempotency_key: str, payment_token: str | None = None) -> Authorization:
        if self.sandbox:
            return Authorization(intent_id=f"sandbox-{idempotency_key}", status="authorized")
        resp = self._call(
            "authorize",
            lambda: self.client.authorize_transient_token(
                client_ref=idempotency_key,
                amount_cents=amount_cents,
                currency=currency,
                transient_token_jwt=payment_token,
            ),
        )
        return Authorization(intent_id=str(resp.get("id") or ""), status=str(resp.get("status") or "AUTHORIZED").lower())

    def capture(self, intent_id: str, amount_cents: int, currency: str, idempotency_key: str) -> None:
        if self.sandbox:
            return
        self._call(
            "capture",
            lambda: self.client.capture(payment_id=intent_id, client_ref=idempotency_key, amount_cents=amount_cents, currency=currency),
        )

    def void(self, intent_id: str, amount_cents: int, currency: str) -> None:
        if self.sandbox:
            return
        self._call(
            "void",
            lambda: self.client.reverse_authorization(payment_id=intent_id, client_ref=intent_id, amount_cents=amount_cents, currency=currency),
        )

    def refund(self, intent_id: str, amount_cents: int, currency: str, idempotency_key: str) -> str:
        if self.sandbox:
            return f"sandbox-{idempotency_key}"
        resp = self._call(
            "refund",
            lambda: self.client.refund_payment(payment_id=intent_id, client_ref=idempotency_key, amount_cents=amount_cents, currency=currency),
        )
        return str(resp.get("id") or "")


def cybersource_client_from_settings() -> CybersourceClient:
    host = settings.CYBS_HOST or ("apitest.cybersource.com" if settings.CYBS_ENV.lower() == "test" else "api.cybersource.com")
    if not (settings.CYBS_MERCHANT_ID and settings.CYBS_KEY_ID and settings.CYBS_SECRET_KEY_B64):
        raise RuntimeError("Cybersource is not configured (missing env vars)")
    return CybersourceClient(CybersourceConfig(
        host=host,
        merchant_id=settings.CYBS_MERCHANT_ID,
        key_id=settings.CYBS_KEY_ID,
        secret_key_b64=settings.CYBS_SECRET_KEY_B64,
        timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
    ))


def build_gateway() -> CybersourceGateway:
    if settings.CYBS_SANDBOX:
        logger.warning("payment_gateway_sandbox_mode")
        return CybersourceGateway(None, sandbox=True)
    return CybersourceGateway(cybersource_client_from_settings())
