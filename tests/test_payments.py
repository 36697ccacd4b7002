import hashlib
import json
import re
import threading
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from backend.errors import (
    BadRequestError,
    ConfigurationError,
    GreenInvoiceError,
    SignatureMismatchError,
)
from backend.payments import (
    CardcomProvider,
    GreenInvoiceClient,
    GreenInvoiceProvider,
    generate_signature,
    parse_custom_field,
    validate_payment_params,
)
from fakes import FakeResponse, FakeSession

ITEMS = [{"id": "p1", "name_he": "בית המקדש", "price": 120.0, "quantity": 1}]
CUSTOMER = {
    "name": "Dana Levi",
    "email": "dana@example.com",
    "phone": "050-1234567",
    "street": "Herzl",
    "houseNumber": "5",
    "city": "Jerusalem",
    "dedication": "For Avi",
}


class MutableClock:
    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment


@pytest.fixture
def cardcom():
    return CardcomProvider(
        "1000",
        "test-api",
        "s3cret-pass",
        frontend_url="https://shop.example.com",
        backend_url="https://api.example.com",
        base_url="https://cardcom.test",
        session=FakeSession(),
    )


def test_signature_is_deterministic_and_order_independent():
    first = generate_signature({"b": "2", "a": "1", "c": "3"})
    second = generate_signature({"c": "3", "a": "1", "b": "2"})

    assert first == second
    assert first == hashlib.md5(b"a=1&b=2&c=3").hexdigest()


def test_cardcom_payment_url(cardcom):
    result = cardcom.initiate(ITEMS, 123.4, CUSTOMER)

    parsed = urlparse(result["paymentUrl"])
    query = {key: values[0] for key, values in parse_qs(parsed.query).items()}
    assert parsed.path == "/BillGoldLowProfile.aspx"
    assert query["SumToBill"] == "123.40"
    assert query["CoinID"] == "1"
    assert query["ReturnValue"] == result["transactionId"]
    assert query["IndicatorUrl"] == "https://api.example.com/api/cardcom/callback"
    assert query["SuccessRedirectUrl"] == "https://shop.example.com/payment/success"
    assert "ApiPassword" not in query
    assert "s3cret-pass" not in result["paymentUrl"]

    signed = {key: value for key, value in query.items() if key != "Signature"}
    assert query["Signature"] == cardcom.sign(signed)


def test_identical_requests_get_distinct_transaction_ids(cardcom):
    first = cardcom.initiate(ITEMS, 100, CUSTOMER)
    second = cardcom.initiate(ITEMS, 100, CUSTOMER)

    assert first["transactionId"] != second["transactionId"]
    for result in (first, second):
        assert re.match(r"^TXN_\d+_[0-9a-z]{9}$", result["transactionId"])


def test_cardcom_usd_currency_code(cardcom):
    result = cardcom.initiate(ITEMS, 10, CUSTOMER, currency="usd")

    assert "CoinID=2" in result["paymentUrl"]


def test_cardcom_validation(cardcom):
    with pytest.raises(BadRequestError) as excinfo:
        cardcom.initiate([], 0, {"name": "Dana"})

    errors = excinfo.value.details["errors"]
    assert "Items array is required and must not be empty" in errors
    assert "Total amount must be a positive number" in errors
    assert "Customer email is required" in errors
    assert "Customer phone is required" in errors


def test_cardcom_requires_credentials():
    provider = CardcomProvider(None, None, None, session=FakeSession())

    with pytest.raises(ConfigurationError) as excinfo:
        provider.initiate(ITEMS, 100, CUSTOMER)
    assert excinfo.value.status_code == 500


def test_cardcom_callback_success(cardcom):
    payload = {
        "ReturnValue": "TXN_1_abc",
        "ResponseCode": "0",
        "DealNumber": "555",
        "lowprofilecode": "LP-1",
    }
    payload["Signature"] = cardcom.sign(payload)

    result = cardcom.verify_callback(payload)

    assert result["success"] is True
    assert result["status"] == "completed"
    assert result["transactionId"] == "TXN_1_abc"
    assert result["dealNumber"] == "555"
    assert result["lowProfileCode"] == "LP-1"


def test_cardcom_callback_failure_code(cardcom):
    payload = {"ReturnValue": "TXN_1_abc", "ResponseCode": "33"}
    payload["Signature"] = cardcom.sign(payload)

    result = cardcom.verify_callback(payload)

    assert result["success"] is False
    assert result["status"] == "failed"


def test_cardcom_callback_signature_mismatch(cardcom):
    payload = {"ReturnValue": "TXN_1_abc", "ResponseCode": "0"}
    payload["Signature"] = cardcom.sign(payload)
    payload["ResponseCode"] = "1"

    with pytest.raises(SignatureMismatchError):
        cardcom.verify_callback(payload)
    with pytest.raises(SignatureMismatchError):
        cardcom.verify_callback({"ReturnValue": "TXN_1_abc", "ResponseCode": "0"})


def test_cardcom_query_status(cardcom):
    cardcom.session.add(
        "POST",
        "/api/v11/LowProfile/GetLpResult",
        FakeResponse(200, {"ResponseCode": 0, "TranzactionId": 9}),
    )

    assert cardcom.query_status("LP-1")["TranzactionId"] == 9
    call = cardcom.session.calls[0]
    assert call["json"]["LowProfileId"] == "LP-1"
    assert call["timeout"] == 10


def test_cardcom_query_status_rejected(cardcom):
    cardcom.session.add(
        "POST",
        "/api/v11/LowProfile/GetLpResult",
        FakeResponse(200, {"ResponseCode": 5, "Description": "Unknown profile"}),
    )

    with pytest.raises(BadRequestError, match="Unknown profile"):
        cardcom.query_status("LP-1")


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def greeninvoice_client(clock):
    session = FakeSession()
    session.add("POST", "/account/token", FakeResponse(200, {"token": "tok-1"}))
    session.add("GET", "/documents/doc-1", FakeResponse(200, {"id": "doc-1", "status": 1}))
    return GreenInvoiceClient(
        "key-id", "key-secret", base_url="https://gi.test/api/v1", session=session, clock=clock
    )


def test_token_is_cached_until_expiry(greeninvoice_client, clock):
    greeninvoice_client.get_document("doc-1")
    clock.moment += timedelta(minutes=54)
    greeninvoice_client.get_document("doc-1")

    assert len(greeninvoice_client.session.calls_to("/account/token")) == 1

    clock.moment += timedelta(minutes=2)
    greeninvoice_client.get_document("doc-1")

    assert len(greeninvoice_client.session.calls_to("/account/token")) == 2


def test_token_request_is_unauthenticated(greeninvoice_client):
    greeninvoice_client.get_document("doc-1")

    token_call, document_call = greeninvoice_client.session.calls
    assert "Authorization" not in token_call["headers"]
    assert token_call["json"] == {"id": "key-id", "secret": "key-secret"}
    assert document_call["headers"]["Authorization"] == "Bearer tok-1"


def test_http_error_is_wrapped(greeninvoice_client):
    greeninvoice_client.session.add(
        "POST",
        "/payments/form",
        FakeResponse(422, {"errorCode": 1003, "errorMessage": "Bad amount"}),
    )

    with pytest.raises(GreenInvoiceError) as excinfo:
        greeninvoice_client.create_payment_form({"amount": 1})

    error = excinfo.value
    assert error.status_code == 422
    payload = error.to_payload()
    assert payload["status"] == 422
    assert payload["error"] == "Bad amount"
    assert payload["errorCode"] == 1003


def test_unreachable_provider_is_503(greeninvoice_client):
    greeninvoice_client.session.add(
        "GET", "/documents/doc-2", error=requests.ConnectionError("connection refused")
    )

    with pytest.raises(GreenInvoiceError) as excinfo:
        greeninvoice_client.get_document("doc-2")

    assert excinfo.value.status_code == 503


def test_payment_form_id_falls_back_to_url(greeninvoice_client):
    greeninvoice_client.session.add(
        "POST", "/payments/form", FakeResponse(200, {"url": "https://pay.test/form/abc123"})
    )

    form = greeninvoice_client.create_payment_form({})

    assert form == {"url": "https://pay.test/form/abc123", "formId": "abc123"}


def test_test_mode_without_credentials(clock):
    session = FakeSession()
    provider = GreenInvoiceProvider(
        GreenInvoiceClient(None, None, session=session, clock=clock),
        frontend_url="https://shop.example.com",
        clock=clock,
    )

    result = provider.initiate(ITEMS, 120, CUSTOMER)

    assert provider.uses_test_mode
    assert result["testMode"] is True
    assert result["formId"].startswith("TEST_INV_")
    assert result["paymentUrl"].startswith("https://shop.example.com/payment/success?formId=")
    assert session.calls == []


def test_production_without_credentials_fails(clock):
    provider = GreenInvoiceProvider(
        GreenInvoiceClient(None, None, session=FakeSession(), clock=clock),
        production=True,
        test_mode=True,
        clock=clock,
    )

    assert not provider.uses_test_mode
    with pytest.raises(ConfigurationError):
        provider.initiate(ITEMS, 120, CUSTOMER)


def test_live_payment_form(greeninvoice_client, clock):
    greeninvoice_client.session.add(
        "POST",
        "/payments/form",
        FakeResponse(200, {"url": "https://pay.test/form/xyz", "formId": "xyz"}),
    )
    provider = GreenInvoiceProvider(
        greeninvoice_client,
        frontend_url="https://shop.example.com",
        backend_url="https://api.example.com",
        production=True,
        clock=clock,
    )

    result = provider.initiate(ITEMS, 120, CUSTOMER, coupon_code="WELCOME10")

    assert result["formId"] == "xyz"
    assert result["testMode"] is False
    sent = greeninvoice_client.session.calls_to("/payments/form")[0]["json"]
    assert sent["type"] == 305
    assert sent["notifyUrl"] == "https://api.example.com/api/greeninvoice/webhook"
    assert sent["income"][0]["description"] == "בית המקדש"
    custom = json.loads(sent["custom"])
    assert custom["dedication"] == "For Avi"
    assert custom["couponCode"] == "WELCOME10"


def test_webhook_requires_form_id_and_status(clock):
    provider = GreenInvoiceProvider(GreenInvoiceClient(None, None, clock=clock), clock=clock)

    with pytest.raises(BadRequestError, match="Invalid webhook data"):
        provider.verify_callback({"formId": "F1"})


def test_webhook_reads_custom_field(clock):
    provider = GreenInvoiceProvider(GreenInvoiceClient(None, None, clock=clock), clock=clock)

    order = provider.verify_callback(
        {
            "formId": "F1",
            "status": "approved",
            "documentId": "doc-1",
            "custom": json.dumps({"dedication": "For Avi", "couponCode": "SAVE20"}),
        }
    )

    assert order["dedication"] == "For Avi"
    assert "customerInfo" not in order
    assert order["couponCode"] == "SAVE20"
    assert order["provider"] == "greeninvoice"
    assert order["purchaseTimestamp"] == "2026-10-19T12:00:00.000Z"
    assert "items" not in order


def test_parse_custom_field():
    assert parse_custom_field({"a": 1}) == {"a": 1}
    assert parse_custom_field('{"a": 1}') == {"a": 1}
    assert parse_custom_field("not json") == {}
    assert parse_custom_field(None) == {}


def test_items_must_be_objects():
    errors = validate_payment_params(["kit"], 100, CUSTOMER)

    assert errors == ["Each item must be an object"]


def test_cardcom_rejects_non_object_items(cardcom):
    with pytest.raises(BadRequestError) as excinfo:
        cardcom.initiate(["kit"], 100, CUSTOMER)

    assert excinfo.value.details["errors"] == ["Each item must be an object"]


def test_concurrent_callers_share_one_token(greeninvoice_client):
    greeninvoice_client.session.delay = 0.05
    tokens = []

    def worker():
        tokens.append(greeninvoice_client.get_token())

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tokens == ["tok-1"] * 5
    assert len(greeninvoice_client.session.calls_to("/account/token")) == 1


def test_create_document_flattens_url(greeninvoice_client):
    greeninvoice_client.session.add(
        "POST",
        "/documents",
        FakeResponse(
            200,
            {"id": "doc-9", "number": 40001, "url": {"origin": "https://gi.test/d/9", "he": "x"}},
        ),
    )

    document = greeninvoice_client.create_document({"type": 305})

    assert document == {"id": "doc-9", "number": 40001, "url": "https://gi.test/d/9"}


def test_create_document_requires_id(greeninvoice_client):
    greeninvoice_client.session.add("POST", "/documents", FakeResponse(200, {"number": 1}))

    with pytest.raises(GreenInvoiceError, match="Failed to create invoice"):
        greeninvoice_client.create_document({"type": 305})


def test_create_invoice_sends_tax_invoice(greeninvoice_client, clock):
    greeninvoice_client.session.add(
        "POST",
        "/documents",
        FakeResponse(200, {"id": "doc-9", "number": 40001, "url": "https://gi.test/d/9"}),
    )
    provider = GreenInvoiceProvider(
        greeninvoice_client,
        backend_url="https://api.example.com",
        production=True,
        clock=clock,
    )

    document = provider.create_invoice(ITEMS, 120, CUSTOMER)

    assert document == {
        "id": "doc-9",
        "number": 40001,
        "url": "https://gi.test/d/9",
        "testMode": False,
    }
    sent = greeninvoice_client.session.calls_to("/documents")[0]
    assert sent["json"]["type"] == 305
    assert sent["json"]["client"]["emails"] == ["dana@example.com"]
    assert sent["timeout"] == 30


def test_create_invoice_in_test_mode(clock):
    session = FakeSession()
    provider = GreenInvoiceProvider(
        GreenInvoiceClient(None, None, session=session, clock=clock),
        frontend_url="https://shop.example.com",
        clock=clock,
    )

    document = provider.create_invoice(ITEMS, 120, CUSTOMER)

    assert document["testMode"] is True
    assert document["id"].startswith("TEST_DOC_")
    assert session.calls == []
