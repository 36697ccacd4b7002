import hashlib
import hmac
import json
import logging
import secrets
import string
import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

import requests

from .errors import (
    BadRequestError,
    CardcomError,
    ConfigurationError,
    GreenInvoiceError,
    SignatureMismatchError,
)
from .utils import epoch_millis, safe_float, safe_positive_int, utc_now, utc_timestamp

logger = logging.getLogger(__name__)

CARDCOM_BASE_URL = "https://secure.cardcom.solutions"
CARDCOM_CURRENCY_CODES = {"ILS": 1, "USD": 2}
GREENINVOICE_BASE_URL = "https://api.greeninvoice.co.il/api/v1"
GREENINVOICE_TAX_INVOICE = 305
GREENINVOICE_TOKEN_TTL = timedelta(minutes=55)

PROVIDER_TIMEOUT_SECONDS = 30
STATUS_TIMEOUT_SECONDS = 10


def validate_payment_params(items, total_amount, customer_info) -> List[str]:
    errors: List[str] = []

    if not isinstance(items, list) or not items:
        errors.append("Items array is required and must not be empty")
    elif not all(isinstance(item, dict) for item in items):
        errors.append("Each item must be an object")

    if safe_float(total_amount, 0.0) <= 0:
        errors.append("Total amount must be a positive number")

    if not isinstance(customer_info, dict):
        errors.append("Customer information is required")
    else:
        for field, label in (("name", "name"), ("email", "email"), ("phone", "phone")):
            if not str(customer_info.get(field) or "").strip():
                errors.append(f"Customer {label} is required")

    return errors


def item_description(item: Dict[str, object], fallback: str = "Product") -> str:
    return str(
        item.get("name_he") or item.get("name_en") or item.get("name") or fallback
    ).strip()


def _response_body(response):
    try:
        return response.json()
    except ValueError:
        return response.text


class PaymentProvider:
    """Hosted-payment-page integration: start a payment, verify its callback, query it."""

    name = ""

    def initiate(
        self,
        items: List[Dict[str, object]],
        total_amount,
        customer_info: Dict[str, object],
        currency: str = "ILS",
        coupon_code: Optional[str] = None,
    ) -> Dict[str, object]:
        raise NotImplementedError

    def verify_callback(self, payload: Dict[str, object]) -> Dict[str, object]:
        raise NotImplementedError

    def query_status(self, reference: str) -> Dict[str, object]:
        raise NotImplementedError


# ---- Cardcom ----


def generate_transaction_id(moment=None) -> str:
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"TXN_{epoch_millis(moment)}_{suffix}"


def generate_signature(params: Dict[str, object]) -> str:
    joined = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.md5(joined.encode("utf-8")).hexdigest()


class CardcomProvider(PaymentProvider):
    name = "cardcom"

    def __init__(
        self,
        terminal_number: Optional[str],
        api_name: Optional[str],
        api_password: Optional[str],
        *,
        frontend_url: str = "",
        backend_url: str = "",
        base_url: str = CARDCOM_BASE_URL,
        session=None,
        clock: Callable = utc_now,
    ):
        self.terminal_number = str(terminal_number or "").strip()
        self.api_name = str(api_name or "").strip()
        self.api_password = str(api_password or "").strip()
        self.frontend_url = (frontend_url or "").rstrip("/")
        self.backend_url = (backend_url or "").rstrip("/")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.terminal_number and self.api_name and self.api_password)

    def sign(self, params: Dict[str, object]) -> str:
        return generate_signature({**params, "ApiPassword": self.api_password})

    def build_payment_params(
        self,
        items: List[Dict[str, object]],
        total_amount,
        currency: str,
        transaction_id: str,
    ) -> Dict[str, object]:
        currency_code = str(currency or "ILS").strip().upper()
        return {
            "TerminalNumber": self.terminal_number,
            "UserName": self.api_name,
            "SumToBill": f"{safe_float(total_amount, 0.0):.2f}",
            "CoinID": CARDCOM_CURRENCY_CODES.get(currency_code, 1),
            "Language": "he",
            "ProductName": ", ".join(item_description(item) for item in items),
            "ReturnValue": transaction_id,
            "SuccessRedirectUrl": f"{self.frontend_url}/payment/success",
            "ErrorRedirectUrl": f"{self.frontend_url}/payment/error",
            "CancelRedirectUrl": f"{self.frontend_url}/cart",
            "IndicatorUrl": f"{self.backend_url}/api/cardcom/callback",
        }

    def initiate(self, items, total_amount, customer_info, currency="ILS", coupon_code=None):
        errors = validate_payment_params(items, total_amount, customer_info)
        if errors:
            raise BadRequestError(
                ", ".join(errors), details={"error": "Validation failed", "errors": errors}
            )

        if not self.configured:
            logger.error("Cardcom credentials not found")
            raise ConfigurationError(
                "Payment service is not properly configured",
                details={"error": "Cardcom configuration missing"},
            )

        transaction_id = generate_transaction_id(self.clock())
        params = self.build_payment_params(items, total_amount, currency, transaction_id)
        signature = self.sign(params)
        query = urlencode({**params, "Signature": signature})
        payment_url = f"{self.base_url}/BillGoldLowProfile.aspx?{query}"

        logger.info(
            "Cardcom payment created: transaction %s for %s %s",
            transaction_id,
            params["SumToBill"],
            currency,
        )
        return {
            "paymentUrl": payment_url,
            "reference": transaction_id,
            "transactionId": transaction_id,
            "amount": safe_float(total_amount, 0.0),
            "currency": currency,
        }

    def verify_callback(self, payload):
        payload = dict(payload or {})
        received_signature = str(payload.pop("Signature", "") or "").strip().lower()
        expected_signature = self.sign(payload)

        if not received_signature or not hmac.compare_digest(
            received_signature, expected_signature
        ):
            logger.warning(
                "Cardcom callback signature mismatch for %s", payload.get("ReturnValue")
            )
            raise SignatureMismatchError("Invalid signature")

        response_code = str(payload.get("ResponseCode", "")).strip()
        succeeded = response_code == "0"
        result = {
            "transactionId": payload.get("ReturnValue"),
            "success": succeeded,
            "status": "completed" if succeeded else "failed",
            "responseCode": response_code,
            "description": payload.get("Description"),
            "dealNumber": payload.get("DealNumber") or payload.get("InternalDealNumber"),
            "approvalNumber": payload.get("ApprovalNumber"),
            "amount": payload.get("SumToBill") or payload.get("Amount"),
            "lowProfileCode": payload.get("lowprofilecode") or payload.get("LowProfileId"),
        }
        if succeeded:
            logger.info("Cardcom payment successful: %s", result)
        else:
            logger.info("Cardcom payment failed: %s", result)
        return result

    def query_status(self, reference):
        if not self.configured:
            raise ConfigurationError("Payment service is not properly configured")

        request_payload = {
            "TerminalNumber": safe_positive_int(self.terminal_number, 0),
            "ApiName": self.api_name,
            "ApiPassword": self.api_password,
            "LowProfileId": reference,
        }
        url = f"{self.base_url}/api/v11/LowProfile/GetLpResult"
        try:
            response = self.session.request(
                "POST",
                url,
                json=request_payload,
                headers={"Content-Type": "application/json"},
                timeout=STATUS_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            logger.error("Cardcom status check failed: %s", exc)
            raise CardcomError(
                "No response received from Cardcom", unreachable=True
            ) from exc

        body = _response_body(response)
        if response.status_code >= 400:
            raise CardcomError(
                "Status check failed",
                upstream_status=response.status_code,
                body=body,
                headers=response.headers,
            )
        if not isinstance(body, dict) or str(body.get("ResponseCode")) != "0":
            description = body.get("Description") if isinstance(body, dict) else str(body)
            raise BadRequestError(
                description or "Status check failed",
                details={
                    "error": "Status check failed",
                    "responseCode": body.get("ResponseCode") if isinstance(body, dict) else None,
                },
            )
        return body


# ---- GreenInvoice ----


class GreenInvoiceClient:
    def __init__(
        self,
        api_key_id: Optional[str],
        api_key_secret: Optional[str],
        *,
        base_url: str = GREENINVOICE_BASE_URL,
        session=None,
        clock: Callable = utc_now,
        token_ttl: timedelta = GREENINVOICE_TOKEN_TTL,
    ):
        self.api_key_id = str(api_key_id or "").strip()
        self.api_key_secret = str(api_key_secret or "").strip()
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.clock = clock
        self.token_ttl = token_ttl
        self._token_cache = {"token": None, "expires_at": None}
        self._token_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.api_key_id and self.api_key_secret)

    def get_token(self) -> str:
        # Held across the fetch so concurrent callers share one token request.
        with self._token_lock:
            now = self.clock()
            if (
                self._token_cache["token"]
                and self._token_cache["expires_at"]
                and self._token_cache["expires_at"] > now
            ):
                return self._token_cache["token"]

            if not self.configured:
                raise ConfigurationError("GreenInvoice credentials are not configured")

            logger.info("Requesting a new GreenInvoice token")
            data = self._send(
                "POST",
                "/account/token",
                payload={"id": self.api_key_id, "secret": self.api_key_secret},
                timeout=STATUS_TIMEOUT_SECONDS,
                authenticated=False,
            )
            token = data.get("token") if isinstance(data, dict) else None
            if not token:
                raise GreenInvoiceError("No token received from GreenInvoice", body=data)

            self._token_cache["token"] = token
            self._token_cache["expires_at"] = now + self.token_ttl
            return token

    def _send(
        self,
        method: str,
        path: str,
        *,
        payload=None,
        timeout: int = PROVIDER_TIMEOUT_SECONDS,
        authenticated: bool = True,
    ):
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.get_token()}"

        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", json=payload, headers=headers, timeout=timeout
            )
        except requests.RequestException as exc:
            logger.error("GreenInvoice request %s %s failed: %s", method, path, exc)
            raise GreenInvoiceError(
                "No response received from GreenInvoice API",
                unreachable=True,
                details={"error": str(exc)},
            ) from exc

        body = _response_body(response)
        if response.status_code >= 400:
            logger.error(
                "GreenInvoice API error response: status=%s body=%s headers=%s",
                response.status_code,
                body,
                dict(response.headers),
            )
            error_details = body if isinstance(body, dict) else {}
            raise GreenInvoiceError(
                "GreenInvoice API Error",
                upstream_status=response.status_code,
                body=body,
                headers=response.headers,
                details={
                    "error": error_details.get("errorMessage") or str(body),
                    "errorCode": error_details.get("errorCode"),
                },
            )
        return body

    def create_document(self, payload: Dict[str, object]) -> Dict[str, object]:
        data = self._send("POST", "/documents", payload=payload)
        if not isinstance(data, dict) or not data.get("id"):
            raise GreenInvoiceError("Failed to create invoice", body=data)
        url = data.get("url")
        if isinstance(url, dict):
            url = url.get("origin") or url.get("he") or url.get("en")
        return {"id": data.get("id"), "number": data.get("number"), "url": url}

    def create_payment_form(self, payload: Dict[str, object]) -> Dict[str, object]:
        data = self._send("POST", "/payments/form", payload=payload)
        url = data.get("url") if isinstance(data, dict) else None
        if not url:
            raise GreenInvoiceError("Failed to create payment form", body=data)
        form_id = data.get("formId") or url.rstrip("/").split("/")[-1].split("?")[0]
        return {"url": url, "formId": form_id}

    def get_document(self, document_id: str) -> Dict[str, object]:
        return self._send("GET", f"/documents/{document_id}", timeout=STATUS_TIMEOUT_SECONDS)

    def create_customer(self, customer: Dict[str, object]) -> Dict[str, object]:
        return self._send("POST", "/clients", payload=customer)

    def document_types(self):
        return self._send("GET", "/documents/types", timeout=STATUS_TIMEOUT_SECONDS)


def _customer_address(customer_info: Dict[str, object]) -> str:
    parts = [
        str(customer_info.get("street") or "").strip(),
        str(customer_info.get("houseNumber") or "").strip(),
    ]
    if customer_info.get("apartmentNumber"):
        parts.append(f"Apt {customer_info['apartmentNumber']}")
    if customer_info.get("floor"):
        parts.append(f"Floor {customer_info['floor']}")
    return " ".join(part for part in parts if part)


def parse_custom_field(value) -> Dict[str, object]:
    if isinstance(value, dict):
        return value
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError) as exc:
        logger.error("Failed to parse custom data: %s", exc)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class GreenInvoiceProvider(PaymentProvider):
    name = "greeninvoice"

    def __init__(
        self,
        client: GreenInvoiceClient,
        *,
        frontend_url: str = "",
        backend_url: str = "",
        plugin_id: Optional[str] = None,
        production: bool = False,
        test_mode: bool = False,
        clock: Callable = utc_now,
    ):
        self.client = client
        self.frontend_url = (frontend_url or "").rstrip("/")
        self.backend_url = (backend_url or "").rstrip("/")
        self.plugin_id = plugin_id
        self.production = production
        self.test_mode = test_mode
        self.clock = clock

    @property
    def uses_test_mode(self) -> bool:
        return not self.production and (self.test_mode or not self.client.configured)

    def build_invoice_payload(
        self,
        items: List[Dict[str, object]],
        total_amount,
        customer_info: Dict[str, object],
        currency: str = "ILS",
        order_reference: Optional[str] = None,
        coupon_code: Optional[str] = None,
    ) -> Dict[str, object]:
        today = self.clock().date()
        order_reference = order_reference or str(epoch_millis(self.clock()))
        custom = {
            "orderId": order_reference,
            "customerId": customer_info.get("email"),
            "items": ",".join(str(item.get("id") or "") for item in items),
            "dedication": customer_info.get("dedication") or "",
        }
        if coupon_code:
            custom["couponCode"] = coupon_code

        payload = {
            "description": f"תשלום על הזמנה #{order_reference}",
            "type": GREENINVOICE_TAX_INVOICE,
            "date": today.isoformat(),
            "dueDate": (today + timedelta(days=30)).isoformat(),
            "lang": "he",
            "currency": str(currency or "ILS").upper(),
            "vatType": 0,
            "amount": safe_float(total_amount, 0.0),
            "maxPayments": 1,
            "group": 100,
            "client": {
                "name": customer_info.get("name") or "אורח",
                "emails": [customer_info.get("email")],
                "phone": customer_info.get("phone") or "050-0000000",
                "address": _customer_address(customer_info),
                "city": customer_info.get("city") or "",
                "country": "IL",
            },
            "income": [
                {
                    "description": item_description(item, "פריט"),
                    "quantity": safe_positive_int(item.get("quantity"), 1) or 1,
                    "price": safe_float(item.get("price"), 0.0),
                    "vatType": 1,
                }
                for item in items
            ],
            "remarks": "תודה על הזמנתך",
            "successUrl": f"{self.frontend_url}/payment/success",
            "failureUrl": f"{self.frontend_url}/payment/failure",
            "notifyUrl": f"{self.backend_url}/api/greeninvoice/webhook",
            "custom": json.dumps(custom, ensure_ascii=False),
        }
        if self.plugin_id:
            payload["pluginId"] = self.plugin_id
        return payload

    def initiate(self, items, total_amount, customer_info, currency="ILS", coupon_code=None):
        errors = validate_payment_params(items, total_amount, customer_info)
        if errors:
            raise BadRequestError("Invalid input parameters", details={"errors": errors})

        now = self.clock()
        if self.uses_test_mode:
            form_id = f"TEST_INV_{int(now.timestamp())}_{secrets.token_hex(4)}"
            logger.warning(
                "GreenInvoice test mode (credentials %s); returning synthetic form %s",
                "present" if self.client.configured else "missing",
                form_id,
            )
            return {
                "paymentUrl": f"{self.frontend_url}/payment/success?formId={form_id}",
                "reference": form_id,
                "formId": form_id,
                "status": "created",
                "testMode": True,
            }

        if not self.client.configured:
            raise ConfigurationError(
                "Payment service is not properly configured",
                details={"error": "GreenInvoice configuration missing"},
            )

        payload = self.build_invoice_payload(
            items,
            total_amount,
            customer_info,
            currency=currency,
            order_reference=str(epoch_millis(now)),
            coupon_code=coupon_code,
        )
        form = self.client.create_payment_form(payload)
        logger.info("GreenInvoice payment form %s created", form["formId"])
        return {
            "paymentUrl": form["url"],
            "reference": form["formId"],
            "formId": form["formId"],
            "status": "created",
            "testMode": False,
        }

    def create_invoice(self, items, total_amount, customer_info, currency="ILS", coupon_code=None):
        """Issue a tax invoice document for the order; returns ``{id, number, url, testMode}``."""
        errors = validate_payment_params(items, total_amount, customer_info)
        if errors:
            raise BadRequestError("Invalid input parameters", details={"errors": errors})

        now = self.clock()
        if self.uses_test_mode:
            document_id = f"TEST_DOC_{int(now.timestamp())}_{secrets.token_hex(4)}"
            logger.warning("GreenInvoice test mode; returning synthetic document %s", document_id)
            return {
                "id": document_id,
                "number": None,
                "url": f"{self.frontend_url}/payment/success?documentId={document_id}",
                "testMode": True,
            }

        if not self.client.configured:
            raise ConfigurationError(
                "Payment service is not properly configured",
                details={"error": "GreenInvoice configuration missing"},
            )

        payload = self.build_invoice_payload(
            items,
            total_amount,
            customer_info,
            currency=currency,
            order_reference=str(epoch_millis(now)),
            coupon_code=coupon_code,
        )
        document = self.client.create_document(payload)
        logger.info("GreenInvoice document %s created", document["id"])
        return {**document, "testMode": False}

    def verify_callback(self, payload):
        if not isinstance(payload, dict) or not payload.get("formId") or not payload.get("status"):
            logger.error("Invalid GreenInvoice webhook data received")
            raise BadRequestError("Invalid webhook data", details={"error": "Invalid webhook data"})

        custom_data = parse_custom_field(payload.get("custom"))
        dedication = custom_data.get("dedication") or ""
        customer_info = dict(payload.get("customerInfo") or {})
        if customer_info and dedication:
            customer_info["dedication"] = dedication

        order = {
            "formId": payload.get("formId"),
            "status": payload.get("status"),
            "documentId": payload.get("documentId"),
            "paymentId": payload.get("paymentId"),
            "amount": payload.get("amount"),
            "currency": payload.get("currency"),
            "customerInfo": customer_info,
            "items": payload.get("items") or [],
            "purchaseTimestamp": utc_timestamp(self.clock()),
            "dedication": dedication,
            "provider": self.name,
            "couponCode": custom_data.get("couponCode"),
            "reason": payload.get("reason"),
        }
        # Empty fields must not wipe what the pending record already holds.
        return {
            key: value
            for key, value in order.items()
            if key in ("formId", "status") or value not in (None, "", [], {})
        }

    def query_status(self, reference):
        return self.client.get_document(reference)
