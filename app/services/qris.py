"""
QRIS payment provider client.

Provider responses are inconsistent across deployments, so every logical value is
read through an ordered list of candidate field names. When a response wraps its
body in a `data` object, `data` is searched before the top level.

Paid-flag mapping (check_status), each lookup searching `data` then the top level:
  1. a boolean `paid` decides outright;
  2. otherwise the first string among STATUS_FIELDS is upper-cased and matched by
     substring: NOT_PAID markers first (so "UNPAID" is not read as "PAID"), then
     PAID markers;
  3. anything else, or no status at all, is UNKNOWN. UNKNOWN is never paid.
"""

import secrets
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from app.core.config import get_settings
from app.core.exceptions import ProviderError
from app.core.logging import get_logger

log = get_logger(__name__)

PAYMENT_ID_FIELDS = ("trxid", "trx_id", "transaction_id", "reference", "order_id", "id", "paymentId", "payment_id", "external_id")
QR_IMAGE_FIELDS = ("qris_url", "qr", "qr_image", "image", "download_url", "qrisImageUrl", "qrUrl")
QR_STRING_FIELDS = ("qr_string", "qris_string", "qrisRaw", "qrString")
PAY_URL_FIELDS = ("pay_url", "payment_url", "checkout_url")
TOTAL_FIELDS = ("total_amount", "total", "amount_total", "totalDue")
FEE_FIELDS = ("fee", "fee_amount", "admin_fee")
EXPIRY_FIELDS = ("expired_minutes", "expiry_minutes", "expires_in_minutes")
STATUS_FIELDS = ("status", "payment_status", "transaction_status", "state")

NOT_PAID_MARKERS = ("UNPAID", "PENDING", "WAIT", "EXPIRE", "FAIL", "CANCEL")
PAID_MARKERS = ("PAID", "SUCCESS", "SETTLE")


class ProviderStatus(str, Enum):
    PAID = "paid"
    NOT_PAID = "not_paid"
    UNKNOWN = "unknown"


class Invoice(BaseModel):
    payment_id: str
    pay_url: str | None = None
    qr_image_url: str | None = None
    qr_string: str | None = None
    total_due: int
    fee_amount: int = 0
    expiry_minutes: int


def _sources(payload: dict[str, Any]) -> list[dict[str, Any]]:
    data = payload.get("data")
    return [data, payload] if isinstance(data, dict) else [payload]


def pick(payload: dict[str, Any], fields: tuple[str, ...]) -> Any:
    """First non-empty value of the first matching field, nested `data` first."""
    for source in _sources(payload):
        for field in fields:
            value = source.get(field)
            if value not in (None, ""):
                return value
    return None


def pick_text(payload: dict[str, Any], fields: tuple[str, ...]) -> str | None:
    """Like pick, but only non-empty strings count."""
    for source in _sources(payload):
        for field in fields:
            value = source.get(field)
            if isinstance(value, str) and value:
                return value
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def normalize_invoice(payload: dict[str, Any], requested_total: int, default_expiry_minutes: int) -> Invoice:
    payment_id = pick(payload, PAYMENT_ID_FIELDS)
    if payment_id is None or isinstance(payment_id, (dict, list, bool)):
        raise ProviderError(ProviderError.MALFORMED, "Provider response has no payment id")

    # non-string QR values (e.g. {"qr": {"url": ...}}) are ignored, not coerced
    qr_image = pick_text(payload, QR_IMAGE_FIELDS)
    qr_string = pick_text(payload, QR_STRING_FIELDS)
    if qr_image and not qr_image.startswith(("http://", "https://", "data:")):
        # some providers put the raw QR payload in `qr`
        qr_string = qr_string or qr_image
        qr_image = None
    pay_url = pick_text(payload, PAY_URL_FIELDS)
    if not (qr_image or qr_string or pay_url):
        raise ProviderError(ProviderError.MALFORMED, "Provider response has no QR asset")

    fee = _as_int(pick(payload, FEE_FIELDS)) or 0
    total = _as_int(pick(payload, TOTAL_FIELDS))
    expiry = _as_int(pick(payload, EXPIRY_FIELDS))
    try:
        return Invoice(
            payment_id=str(payment_id),
            pay_url=pay_url,
            qr_image_url=qr_image,
            qr_string=qr_string,
            total_due=total if total and total > 0 else requested_total + fee,
            fee_amount=fee,
            expiry_minutes=expiry if expiry and expiry > 0 else default_expiry_minutes,
        )
    except ValidationError as e:
        raise ProviderError(ProviderError.MALFORMED, f"Provider invoice failed validation: {e.error_count()} error(s)") from e


def normalize_status(payload: dict[str, Any]) -> ProviderStatus:
    sources = _sources(payload)
    paid = next((s["paid"] for s in sources if isinstance(s.get("paid"), bool)), None)
    if paid is not None:
        return ProviderStatus.PAID if paid else ProviderStatus.NOT_PAID
    status = pick_text(payload, STATUS_FIELDS)
    if status is None:
        return ProviderStatus.UNKNOWN
    text = status.upper()
    if any(marker in text for marker in NOT_PAID_MARKERS):
        return ProviderStatus.NOT_PAID
    if any(marker in text for marker in PAID_MARKERS):
        return ProviderStatus.PAID
    return ProviderStatus.UNKNOWN


def extract_payment_id(payload: dict[str, Any]) -> str | None:
    value = pick(payload, PAYMENT_ID_FIELDS)
    return str(value) if value is not None and not isinstance(value, (dict, list, bool)) else None


class PaymentProvider(ABC):
    @abstractmethod
    async def create_invoice(self, amount: int, metadata: dict[str, Any] | None = None) -> Invoice:
        """Raise ProviderError on any failure."""
        ...

    @abstractmethod
    async def check_status(self, payment_id: str) -> ProviderStatus:
        """Raise ProviderError on network/HTTP/parse failure."""
        ...

    async def close(self) -> None:
        pass


class QrisClient(PaymentProvider):
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        s = get_settings()
        self.create_url = s.qris_create_url
        self.check_url = s.qris_check_url
        self.merchant_id = s.qris_merchant_id
        self.api_key = s.qris_api_key
        self.qris_code = s.qris_code
        self.default_expiry_minutes = s.payment_expiry_minutes
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(s.qris_timeout_seconds))

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            res = await self._client.post(url, json=body)
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderError.NETWORK, "Payment provider timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(ProviderError.NETWORK, f"Payment provider unreachable: {e}") from e
        if not res.is_success:
            raise ProviderError(ProviderError.HTTP_STATUS, f"Payment provider returned {res.status_code}", res.status_code)
        try:
            data = res.json()
        except ValueError as e:
            raise ProviderError(ProviderError.MALFORMED, "Payment provider returned non-JSON body") from e
        if not isinstance(data, dict):
            raise ProviderError(ProviderError.MALFORMED, "Payment provider returned unexpected JSON")
        if data.get("success") is False or data.get("status") is False:
            raise ProviderError(ProviderError.REJECTED, str(data.get("message") or data.get("error") or "Rejected by provider"))
        return data

    async def create_invoice(self, amount: int, metadata: dict[str, Any] | None = None) -> Invoice:
        metadata = metadata or {}
        body = {
            "amount": amount,
            "merchant_id": self.merchant_id,
            "api_key": self.api_key,
            "external_id": f"ORD{int(time.time() * 1000)}{secrets.token_hex(2).upper()}",
            "note": metadata.get("note", ""),
        }
        if self.qris_code:
            body["qris_code"] = self.qris_code
        data = await self._post(self.create_url, body)
        invoice = normalize_invoice(data, amount, self.default_expiry_minutes)
        log.info("qris_invoice_created", payment_id=invoice.payment_id, amount=amount, total_due=invoice.total_due)
        return invoice

    async def check_status(self, payment_id: str) -> ProviderStatus:
        data = await self._post(
            self.check_url,
            {"merchant_id": self.merchant_id, "api_key": self.api_key, "paymentId": payment_id, "trxid": payment_id},
        )
        status = normalize_status(data)
        log.info("qris_status_checked", payment_id=payment_id, status=status.value)
        return status

    async def close(self) -> None:
        await self._client.aclose()


_provider: PaymentProvider | None = None


def get_provider() -> PaymentProvider:
    global _provider
    if _provider is None:
        _provider = QrisClient()
    return _provider
