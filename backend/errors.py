from typing import Dict, Optional


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, object]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"success": False, "message": self.message}
        payload.update(self.details)
        return payload


class BadRequestError(StorefrontError):
    status_code = 400


class NotFoundError(StorefrontError):
    status_code = 404


class ConflictError(StorefrontError):
    status_code = 409


class InvalidCouponError(BadRequestError):
    pass


class CouponLimitReachedError(BadRequestError):
    pass


class SignatureMismatchError(BadRequestError):
    pass


class ConfigurationError(StorefrontError):
    status_code = 500


class PaymentProviderError(StorefrontError):
    """Raised when a payment or invoicing provider rejects a call or cannot be reached.

    ``upstream_status`` is ``None`` when no HTTP response was received at all.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        upstream_status: Optional[int] = None,
        body=None,
        headers: Optional[Dict[str, str]] = None,
        details: Optional[Dict[str, object]] = None,
        unreachable: bool = False,
    ):
        super().__init__(message, details=details)
        self.upstream_status = upstream_status
        self.body = body
        self.headers = dict(headers or {})
        if unreachable:
            self.status_code = 503
        elif upstream_status and 400 <= upstream_status < 600:
            self.status_code = upstream_status

    def to_payload(self) -> Dict[str, object]:
        payload = super().to_payload()
        if self.upstream_status is not None:
            payload["status"] = self.upstream_status
        if self.body is not None:
            payload["details"] = self.body
        return payload


class GreenInvoiceError(PaymentProviderError):
    pass


class CardcomError(PaymentProviderError):
    pass
