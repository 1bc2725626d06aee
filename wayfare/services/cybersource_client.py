import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime

import requests


@dataclass
class CybersourceConfig:
    host: str               # apitest.cybersource.com OR api.cybersource.com
    merchant_id: str        # v-c-merchant-id header
    key_id: str             # keyid in Signature header
    secret_key_b64: str     # shared secret from Business Center (base64)
    timeout: float = 25


class CybersourceError(RuntimeError):
    def __init__(self, message: str, status_code: int = 0, data: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.data = data or {}


def _sha256_digest_b64(body_bytes: bytes) -> str:
    return base64.b64encode(hashlib.sha256(body_bytes).digest()).decode("utf-8")


def _hmac_sha256_b64(secret_key: bytes, msg: str) -> str:
    sig = hmac.new(secret_key, msg.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(sig).decode("utf-8")


def _validation_string(method: str, resource: str, host: str, date_str: str, digest_header: str, merchant_id: str) -> str:
    # newline separated, no trailing newline
    lines = [
        f"host: {host}",
        f"date: {date_str}",
        f"(request-target): {method.lower()} {resource}",
        f"digest: {digest_header}",
        f"v-c-merchant-id: {merchant_id}",
    ]
    return "\n".join(lines)


def format_amount(amount_cents: int) -> str:
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


class CybersourceClient:
    """Signed REST calls against the Cybersource Payments API.

    Raises ``CybersourceError`` for HTTP errors; ``requests`` transport
    exceptions (timeouts, connection errors) propagate unchanged so callers
    can tell an unknown outcome from a refusal.
    """

    def __init__(self, cfg: CybersourceConfig):
        self.cfg = cfg
        b64 = (cfg.secret_key_b64 or "").strip().replace("\r", "").replace("\n", "").replace(" ", "")
        self._secret = base64.b64decode(b64)

    def _headers(self, method: str, resource: str, body_bytes: bytes) -> dict:
        date_str = format_datetime(datetime.now(timezone.utc), usegmt=True)
        digest_header = f"SHA-256={_sha256_digest_b64(body_bytes)}"

        vs = _validation_string(method, resource, self.cfg.host, date_str, digest_header, self.cfg.merchant_id)
        signature_b64 = _hmac_sha256_b64(self._secret, vs)

        signature_header = (
            f'keyid="{self.cfg.key_id}", '
            f'algorithm="HmacSHA256", '
            f'headers="host date (request-target) digest v-c-merchant-id", '
            f'signature="{signature_b64}"'
        )
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Host": self.cfg.host,
            "Date": date_str,
            "Digest": digest_header,
            "v-c-merchant-id": self.cfg.merchant_id,
            "Signature": signature_header,
        }

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        body_bytes = json.dumps(payload or {}, separators=(",", ":")).encode("utf-8")
        headers = self._headers(method, path, body_bytes)
        url = f"https://{self.cfg.host}{path}"
        r = requests.request(method=method.upper(), url=url, data=body_bytes, headers=headers, timeout=self.cfg.timeout)
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if r.status_code >= 400:
            raise CybersourceError(f"Cybersource {r.status_code}: {data}", status_code=r.status_code, data=data)
        return data

    def authorize_transient_token(self, *, client_ref: str, amount_cents: int, currency: str, transient_token_jwt: str | None) -> dict:
        payload = {
            "clientReferenceInformation": {"code": client_ref},
            "processingInformation": {"capture": False},
            "orderInformation": {"amountDetails": {"totalAmount": format_amount(amount_cents), "currency": currency}},
        }
        if transient_token_jwt:
            payload["tokenInformation"] = {"transientTokenJwt": transient_token_jwt}
        return self.request("POST", "/pts/v2/payments", payload)

    def capture(self, *, payment_id: str, client_ref: str, amount_cents: int, currency: str) -> dict:
        payload = {
            "clientReferenceInformation": {"code": client_ref},
            "orderInformation": {"amountDetails": {"totalAmount": format_amount(amount_cents), "currency": currency}},
        }
        return self.request("POST", f"/pts/v2/payments/{payment_id}/captures", payload)

    def reverse_authorization(self, *, payment_id: str, client_ref: str, amount_cents: int, currency: str) -> dict:
        payload = {
            "clientReferenceInformation": {"code": client_ref},
            "reversalInformation": {
                "amountDetails": {"totalAmount": format_amount(amount_cents), "currency": currency},
                "reason": "booking_not_completed",
            },
        }
        return self.request("POST", f"/pts/v2/payments/{payment_id}/reversals", payload)

    def refund_payment(self, *, payment_id: str, client_ref: str, amount_cents: int, currency: str) -> dict:
        payload = {
            "clientReferenceInformation": {"code": client_ref},
            "orderInformation": {"amountDetails": {"totalAmount": format_amount(amount_cents), "currency": currency}},
        }
        return self.request("POST", f"/pts/v2/payments/{payment_id}/refunds", payload)
