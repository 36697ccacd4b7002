import logging
from typing import Dict, List, Optional, Tuple

import resend
from flask import render_template

from .utils import parse_iso_date, safe_float, safe_positive_int, utc_now

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "לא זמין"
NOT_SPECIFIED = "לא צוין"


def send_email_via_resend(payload: Dict[str, object], api_key: str) -> Tuple[bool, Optional[str]]:
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def normalize_notification_items(items) -> List[Dict[str, object]]:
    if not isinstance(items, list):
        items = [items] if isinstance(items, dict) else []

    normalized: List[Dict[str, object]] = []
    for entry in items:
        if not isinstance(entry, dict):
            continue
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price = safe_float(entry.get("price"), 0.0)
        normalized.append(
            {
                "name": str(
                    entry.get("name_he") or entry.get("name_en") or entry.get("name") or NOT_AVAILABLE
                ),
                "quantity": quantity,
                "price": price,
                "line_total": f"{price * quantity:.2f}",
            }
        )
    return normalized


def format_purchase_time(value) -> str:
    moment = parse_iso_date(value) or utc_now()
    return moment.strftime("%d.%m.%Y %H:%M UTC")


def build_notification_context(order: Dict[str, object]) -> Dict[str, object]:
    customer = order.get("customerInfo")
    if not isinstance(customer, dict):
        customer = {}

    def customer_field(key, placeholder=NOT_AVAILABLE):
        value = customer.get(key)
        return value if value not in (None, "") else placeholder

    status = str(order.get("status") or "unknown")
    return {
        "form_id": order.get("formId") or NOT_AVAILABLE,
        "status": status.lower(),
        "status_label": status.upper(),
        "document_id": order.get("documentId") or NOT_AVAILABLE,
        "payment_id": order.get("paymentId") or NOT_AVAILABLE,
        "amount": order.get("amount") if order.get("amount") is not None else NOT_AVAILABLE,
        "currency": order.get("currency") or "",
        "purchased_at": format_purchase_time(order.get("purchaseTimestamp")),
        "customer_name": customer_field("name"),
        "customer_email": customer_field("email"),
        "customer_phone": customer_field("phone"),
        "dedication": order.get("dedication") or customer.get("dedication") or NOT_SPECIFIED,
        "street": customer_field("street"),
        "house_number": customer_field("houseNumber"),
        "apartment_number": customer_field("apartmentNumber", NOT_SPECIFIED),
        "floor": customer_field("floor", NOT_SPECIFIED),
        "city": customer_field("city"),
        "items": normalize_notification_items(order.get("items")),
        "coupon_code": order.get("couponCode") or "",
    }


def build_notification_text(context: Dict[str, object]) -> str:
    item_lines = "\n".join(
        f"- {item['name']} x{item['quantity']} - ₪{item['price']} (סה\"כ: ₪{item['line_total']})"
        for item in context["items"]
    )
    return (
        f"הזמנה חדשה - {context['status_label']}\n"
        f"Form ID: {context['form_id']}\n\n"
        "פרטי הזמנה / Order details:\n"
        f"- סטטוס / Status: {context['status_label']}\n"
        f"- Document ID: {context['document_id']}\n"
        f"- Payment ID: {context['payment_id']}\n"
        f"- סכום / Amount: {context['amount']} {context['currency']}\n"
        f"- תאריך רכישה / Purchased: {context['purchased_at']}\n\n"
        "פרטי לקוח / Customer:\n"
        f"- שם מלא / Name: {context['customer_name']}\n"
        f"- אימייל / Email: {context['customer_email']}\n"
        f"- טלפון / Phone: {context['customer_phone']}\n"
        f"- הקדשה / Dedication: {context['dedication']}\n\n"
        "פרטי משלוח / Shipping:\n"
        f"- רחוב / Street: {context['street']}\n"
        f"- מספר בית / House: {context['house_number']}\n"
        f"- מספר דירה / Apartment: {context['apartment_number']}\n"
        f"- קומה / Floor: {context['floor']}\n"
        f"- עיר / City: {context['city']}\n\n"
        "פריטים שהוזמנו / Items:\n"
        f"{item_lines}\n"
    )


class OrderNotifier:
    def __init__(self, api_key: Optional[str], sender: str, recipient: Optional[str]):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.recipient = (recipient or "").strip()

    def send_order_notification(self, order: Dict[str, object]) -> bool:
        """Email the merchant about an order. Returns True once Resend accepts the message."""
        if not self.api_key:
            logger.warning("Order notification skipped: Resend API key is not configured")
            return False
        if not self.recipient:
            logger.warning("Order notification skipped: ADMIN_EMAIL is not configured")
            return False

        context = build_notification_context(order or {})
        payload: Dict[str, object] = {
            "from": self.sender,
            "to": [self.recipient],
            "subject": f"New Order {context['status_label']} - Form ID: {context['form_id']}",
            "html": render_template("emails/order_notification.html", **context),
            "text": build_notification_text(context),
        }

        sent, error_details = send_email_via_resend(payload, self.api_key)
        if not sent:
            logger.error(
                "Failed to send order notification for %s: %s",
                context["form_id"],
                error_details,
            )
            return False

        logger.info("Order notification sent for %s", context["form_id"])
        return True
