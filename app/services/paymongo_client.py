import base64
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
import requests

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class PayMongoConfig:
    secret_key: str
    base_url: str = "https://api.paymongo.com/v1"
    sandbox: bool = False  # mock success without calling the gateway
    timeout: int = 25


class PayMongoError(RuntimeError):
    pass


def php_to_centavos(amount) -> int:
    """PayMongo amounts are integer centavos (PHP 100.00 -> 10000)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _basic_auth(secret_key: str) -> str:
    return "Basic " + base64.b64encode(f"{secret_key}:".encode("utf-8")).decode("ascii")


class PayMongoClient:
    def __init__(self, cfg: PayMongoConfig):
        self.cfg = cfg

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        if not self.cfg.secret_key:
            raise PayMongoError("PayMongo secret key is not configured")
        url = f"{self.cfg.base_url.rstrip('/')}{path}"
        headers = {
            "Authorization": _basic_auth(self.cfg.secret_key),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            r = requests.request(method=method.upper(), url=url, json=payload, headers=headers, timeout=self.cfg.timeout)
        except requests.RequestException as e:
            raise PayMongoError(f"PayMongo unreachable: {e}") from e
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if r.status_code >= 400:
            errors = data.get("errors") or []
            detail = errors[0].get("detail") if errors and isinstance(errors[0], dict) else None
            raise PayMongoError(f"PayMongo {r.status_code}: {detail or data}")
        return data.get("data", data)

    def create_refund(self, *, payment_id: str, amount, reason: str = "requested_by_customer", notes: str | None = None) -> dict:
        """Refund (part of) a paid gateway payment. Returns the refund resource."""
        if self.cfg.sandbox:
            rid = f"ref_sandbox_{uuid.uuid4().hex[:16]}"
            logger.info("PayMongo sandbox refund %s for payment %s", rid, payment_id)
            return {"id": rid, "attributes": {"status": "succeeded", "amount": php_to_centavos(amount), "payment_id": payment_id}}
        payload = {
            "data": {
                "attributes": {
                    "amount": php_to_centavos(amount),
                    "payment_id": payment_id,
                    "reason": reason,
                    "notes": notes,
                }
            }
        }
        return self.request("POST", "/refunds", payload)


def get_paymongo_client() -> PayMongoClient:
    return PayMongoClient(PayMongoConfig(
        secret_key=settings.PAYMONGO_SECRET_KEY,
        base_url=settings.PAYMONGO_API_BASE,
        sandbox=settings.PAYMONGO_SANDBOX,
    ))


def verify_webhook_signature(payload: bytes, signature_header: str | None, secret: str) -> bool:
    """Check a Paymongo-Signature header ("t=<ts>,te=<sig>,li=<sig>" or "t=<ts>,v1=<sig>").

    The signature is hex HMAC-SHA256 over "<t>.<raw body>".
    """
    if not signature_header or not secret:
        return False
    parts = {}
    for chunk in signature_header.split(","):
        if "=" in chunk:
            k, v = chunk.strip().split("=", 1)
            parts[k] = v.strip()
    timestamp = parts.get("t")
    candidates = [parts[k] for k in ("v1", "te", "li") if parts.get(k)]
    if not timestamp or not candidates:
        return False
    signed = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, c) for c in candidates)
