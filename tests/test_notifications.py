import pytest
import resend

from backend.notifications import (
    OrderNotifier,
    build_notification_context,
    normalize_notification_items,
)

ORDER = {
    "formId": "F-100",
    "status": "completed",
    "documentId": "doc-1",
    "amount": 240,
    "currency": "ILS",
    "customerInfo": {"name": "Dana Levi", "email": "dana@example.com", "city": "Haifa"},
    "items": [{"name_en": "Temple model", "quantity": 2, "price": 120}],
    "purchaseTimestamp": "2026-10-19T08:30:00.000Z",
}


@pytest.fixture
def sent(monkeypatch):
    captured = []

    def fake_send(payload):
        captured.append(payload)
        return {"id": "email-1"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return captured


def test_missing_api_key_skips_sending(app, sent):
    notifier = OrderNotifier("", "Shop <orders@shop.test>", "owner@shop.test")

    with app.app_context():
        assert notifier.send_order_notification(ORDER) is False
    assert sent == []


def test_sends_bilingual_email(app, sent):
    notifier = OrderNotifier("re_test", "Shop <orders@shop.test>", "owner@shop.test")

    with app.app_context():
        assert notifier.send_order_notification(ORDER) is True

    payload = sent[0]
    assert payload["to"] == ["owner@shop.test"]
    assert payload["subject"] == "New Order COMPLETED - Form ID: F-100"
    assert "Temple model" in payload["html"]
    assert "240.00" in payload["html"]
    assert 'dir="rtl"' in payload["html"]
    assert "Dana Levi" in payload["text"]


def test_send_failure_returns_false(app, monkeypatch):
    def failing_send(payload):
        raise RuntimeError("rate limited")

    monkeypatch.setattr(resend.Emails, "send", failing_send)
    notifier = OrderNotifier("re_test", "Shop <orders@shop.test>", "owner@shop.test")

    with app.app_context():
        assert notifier.send_order_notification(ORDER) is False


def test_context_placeholders():
    context = build_notification_context({"status": "pending"})

    assert context["form_id"] == "לא זמין"
    assert context["customer_phone"] == "לא זמין"
    assert context["floor"] == "לא צוין"
    assert context["dedication"] == "לא צוין"
    assert context["status_label"] == "PENDING"
    assert context["items"] == []


def test_items_are_coerced_to_a_list():
    items = normalize_notification_items({"name": "Kit", "price": "12.5", "quantity": "2"})

    assert items == [{"name": "Kit", "quantity": 2, "price": 12.5, "line_total": "25.00"}]
