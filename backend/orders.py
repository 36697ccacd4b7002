import logging
import threading
from typing import Dict, List, Optional

from .errors import BadRequestError, NotFoundError
from .utils import utc_timestamp

logger = logging.getLogger(__name__)

STATUS_ALIASES = {
    "approved": "completed",
    "completed": "completed",
    "declined": "failed",
    "failed": "failed",
    "pending": "pending",
}


def normalize_payment_status(value) -> Optional[str]:
    return STATUS_ALIASES.get(str(value or "").strip().lower())


class OrderRepository:
    """Storage seam for order records (free-form dicts keyed by ``formId``).

    Implementations expose a re-entrant ``lock`` held by the store around
    find-then-save sequences.
    """

    def all(self) -> List[Dict[str, object]]:
        raise NotImplementedError

    def find(self, form_id: str) -> Optional[Dict[str, object]]:
        raise NotImplementedError

    def save(self, order: Dict[str, object]) -> Dict[str, object]:
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError

    def clear(self) -> int:
        raise NotImplementedError


class MemoryOrderRepository(OrderRepository):
    def __init__(self):
        self.lock = threading.RLock()
        self._orders: List[Dict[str, object]] = []

    def all(self):
        return list(self._orders)

    def find(self, form_id):
        if form_id is None:
            return None
        for order in self._orders:
            if order.get("formId") == form_id:
                return order
        return None

    def save(self, order):
        form_id = order.get("formId")
        if form_id is not None:
            for index, existing in enumerate(self._orders):
                if existing.get("formId") == form_id:
                    self._orders[index] = order
                    return order
        self._orders.append(order)
        return order

    def count(self):
        return len(self._orders)

    def clear(self):
        removed = len(self._orders)
        self._orders = []
        return removed


class OrderStore:
    def __init__(self, repository: OrderRepository):
        self.repository = repository

    def list(self) -> List[Dict[str, object]]:
        return self.repository.all()

    def count(self) -> int:
        return self.repository.count()

    def get(self, form_id: str) -> Dict[str, object]:
        order = self.repository.find(form_id)
        if order is None:
            raise NotFoundError(
                f"No order found with formId: {form_id}",
                details={"error": "Order not found"},
            )
        return order

    def record(self, payload: Dict[str, object]) -> Dict[str, object]:
        """Store an order payload, merging into an existing record with the same ``formId``."""
        if not isinstance(payload, dict):
            raise BadRequestError("Order payload must be a JSON object")

        order = dict(payload)

        with self.repository.lock:
            existing = self.repository.find(order.get("formId"))
            if existing is not None:
                order = {**existing, **order, "updatedAt": utc_timestamp()}
            if not order.get("receivedAt"):
                order["receivedAt"] = utc_timestamp()
            stored = self.repository.save(order)
            total = self.repository.count()

        logger.info(
            "Order %s stored (status=%s). Total orders: %s",
            stored.get("formId"),
            stored.get("status"),
            total,
        )
        return stored

    def update_status(
        self, form_id: str, status: str, details: Optional[Dict[str, object]] = None
    ) -> Dict[str, object]:
        with self.repository.lock:
            existing = self.repository.find(form_id)
            if existing is None:
                raise NotFoundError(f"No order found with formId: {form_id}")
            payment_details = {
                **(existing.get("paymentDetails") or {}),
                **{key: value for key, value in (details or {}).items() if value is not None},
            }
            updated = {
                **existing,
                "status": status,
                "paymentDetails": payment_details,
                "updatedAt": utc_timestamp(),
            }
            self.repository.save(updated)

        logger.info("Order %s status set to %s", form_id, status)
        return updated

    def claim_coupon_redemption(self, form_id: str) -> Optional[str]:
        """Mark a completed order's coupon as redeemed.

        Returns the coupon code for the first caller only; later calls for the
        same order (repeated callbacks) get ``None``.
        """
        with self.repository.lock:
            order = self.repository.find(form_id)
            if order is None or not order.get("couponCode") or order.get("couponRedeemed"):
                return None
            if normalize_payment_status(order.get("status")) != "completed":
                return None
            self.repository.save(
                {**order, "couponRedeemed": True, "updatedAt": utc_timestamp()}
            )
        return str(order["couponCode"])

    def clear(self) -> int:
        with self.repository.lock:
            return self.repository.clear()
