"""QRIS client: response normalization and error mapping."""

import httpx
import orjson
import pytest

from app.core.exceptions import ProviderError
from app.services.qris import ProviderStatus, QrisClient, extract_payment_id, normalize_invoice, normalize_status

pytestmark = pytest.mark.asyncio


def _client(handler) -> QrisClient:
    qris = QrisClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    qris.create_url = "https://qris.test/create"
    qris.check_url = "https://qris.test/check"
    qris.merchant_id = "M1"
    qris.api_key = "K1"
    return qris


async def test_invoice_fields_read_from_nested_data_first():
    invoice = normalize_invoice(
        {
            "id": "outer",
            "data": {"trxid": "TRX9", "qris_url": "https://qr.test/9.png", "total_amount": "10144", "fee": 144},
        },
        10000,
        15,
    )
    assert invoice.payment_id == "TRX9"
    assert invoice.qr_image_url == "https://qr.test/9.png"
    assert (invoice.total_due, invoice.fee_amount, invoice.expiry_minutes) == (10144, 144, 15)


async def test_raw_qr_payload_is_treated_as_qr_string():
    invoice = normalize_invoice({"transaction_id": 55, "qr": "00020101021226...", "expired_minutes": 30}, 5000, 15)
    assert invoice.payment_id == "55"
    assert invoice.qr_image_url is None
    assert invoice.qr_string.startswith("000201")
    assert invoice.total_due == 5000
    assert invoice.expiry_minutes == 30


@pytest.mark.parametrize("payload", [{"qris_url": "https://qr.test/x.png"}, {"trxid": "T1"}])
async def test_invoice_without_id_or_qr_is_malformed(payload):
    with pytest.raises(ProviderError) as exc:
        normalize_invoice(payload, 1000, 15)
    assert exc.value.kind == ProviderError.MALFORMED


@pytest.mark.parametrize(
    "payload",
    [
        {"trxid": "A1", "qr": {"url": "https://qr.test/a.png"}},
        {"trxid": "A1", "qris_url": ["https://qr.test/a.png"], "pay_url": 42},
        {"trxid": {"id": "A1"}, "qris_url": "https://qr.test/a.png"},
    ],
)
async def test_wrong_typed_fields_are_malformed(payload):
    with pytest.raises(ProviderError) as exc:
        normalize_invoice(payload, 1000, 15)
    assert exc.value.kind == ProviderError.MALFORMED


async def test_non_string_candidate_falls_through_to_next_field():
    invoice = normalize_invoice({"trxid": "A1", "qris_url": {"x": 1}, "qr_image": "https://qr.test/a.png"}, 1000, 15)
    assert invoice.qr_image_url == "https://qr.test/a.png"


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"paid": True, "status": "UNPAID"}, ProviderStatus.PAID),
        ({"paid": False}, ProviderStatus.NOT_PAID),
        ({"status": "UNPAID"}, ProviderStatus.NOT_PAID),
        ({"status": "settlement"}, ProviderStatus.PAID),
        ({"data": {"payment_status": "SUCCESS"}, "status": "pending"}, ProviderStatus.PAID),
        ({"status": "EXPIRED"}, ProviderStatus.NOT_PAID),
        ({"success": True, "status": "PAID", "data": {"trxid": "X1"}}, ProviderStatus.PAID),
        ({"paid": True, "data": {"trxid": "X1"}}, ProviderStatus.PAID),
        ({"data": {"paid": False}, "status": "PAID"}, ProviderStatus.NOT_PAID),
        ({"data": {"status": {"code": 1}}, "status": "settled"}, ProviderStatus.PAID),
        ({"status": "processing"}, ProviderStatus.UNKNOWN),
        ({}, ProviderStatus.UNKNOWN),
    ],
)
async def test_status_mapping(payload, expected):
    assert normalize_status(payload) == expected


async def test_extract_payment_id_ignores_non_scalars():
    assert extract_payment_id({"data": {"reference": "R1"}}) == "R1"
    assert extract_payment_id({"id": {"nested": 1}}) is None


async def test_create_invoice_posts_credentials():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(orjson.loads(request.content))
        return httpx.Response(200, json={"success": True, "data": {"trxid": "TRX1", "qris_url": "https://qr.test/1.png"}})

    qris = _client(handler)
    invoice = await qris.create_invoice(10001, {"note": "Deposit 10000"})
    await qris.close()
    assert invoice.payment_id == "TRX1"
    assert invoice.total_due == 10001
    assert seen["merchant_id"] == "M1" and seen["api_key"] == "K1"
    assert seen["amount"] == 10001
    assert seen["external_id"].startswith("ORD")


async def test_check_status_paid():
    qris = _client(lambda request: httpx.Response(200, json={"status": "PAID"}))
    assert await qris.check_status("TRX1") == ProviderStatus.PAID


async def test_check_status_top_level_status_beside_data():
    body = {"success": True, "status": "PAID", "data": {"trxid": "TRX1", "amount": 10000}}
    qris = _client(lambda request: httpx.Response(200, json=body))
    assert await qris.check_status("TRX1") == ProviderStatus.PAID


async def test_create_invoice_with_object_qr_is_malformed():
    body = {"success": True, "trxid": "A1", "qr": {"url": "https://qr.test/a.png"}}
    qris = _client(lambda request: httpx.Response(200, json=body))
    with pytest.raises(ProviderError) as exc:
        await qris.create_invoice(1000)
    assert exc.value.kind == ProviderError.MALFORMED


@pytest.mark.parametrize(
    "response,kind",
    [
        (httpx.Response(503, text="down"), ProviderError.HTTP_STATUS),
        (httpx.Response(200, text="<html>"), ProviderError.MALFORMED),
        (httpx.Response(200, json=["x"]), ProviderError.MALFORMED),
        (httpx.Response(200, json={"success": False, "message": "bad key"}), ProviderError.REJECTED),
    ],
)
async def test_check_status_error_kinds(response, kind):
    qris = _client(lambda request: response)
    with pytest.raises(ProviderError) as exc:
        await qris.check_status("TRX1")
    assert exc.value.kind == kind


async def test_timeout_maps_to_network():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    qris = _client(handler)
    with pytest.raises(ProviderError) as exc:
        await qris.create_invoice(1000)
    assert exc.value.kind == ProviderError.NETWORK
    assert exc.value.retryable
