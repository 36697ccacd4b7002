import copy
import logging
import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from .errors import (
    BadRequestError,
    ConflictError,
    CouponLimitReachedError,
    InvalidCouponError,
    NotFoundError,
)
from .utils import format_amount, parse_iso_date, safe_float, safe_positive_int, utc_now

logger = logging.getLogger(__name__)

COUPON_TYPES = {"percentage", "fixed"}
DEFAULT_MAX_USAGE = 100
DEFAULT_VALIDITY_DAYS = 365


def build_seed_coupons(today=None) -> List[Dict[str, object]]:
    today = today or utc_now().date()
    valid_until = (today + timedelta(days=DEFAULT_VALIDITY_DAYS)).isoformat()
    return [
        {
            "id": 1,
            "code": "WELCOME10",
            "discount": 10,
            "type": "percentage",
            "minAmount": 0,
            "maxDiscount": 50,
            "validFrom": "2025-01-01",
            "validUntil": valid_until,
            "isActive": True,
            "usageCount": 0,
            "maxUsage": 100,
        },
        {
            "id": 2,
            "code": "SAVE20",
            "discount": 20,
            "type": "fixed",
            "minAmount": 100,
            "maxDiscount": 20,
            "validFrom": "2025-01-01",
            "validUntil": valid_until,
            "isActive": True,
            "usageCount": 0,
            "maxUsage": 50,
        },
    ]


class CouponRepository:
    """Storage seam for coupon records.

    Records are plain dicts keyed the way the API exposes them. ``lock`` (a
    re-entrant lock) must be held around any read-modify-write sequence.
    """

    def all(self) -> List[Dict[str, object]]:
        raise NotImplementedError

    def find_by_code(self, code: str) -> Optional[Dict[str, object]]:
        raise NotImplementedError

    def find_by_id(self, coupon_id: int) -> Optional[Dict[str, object]]:
        raise NotImplementedError

    def insert(self, coupon: Dict[str, object]) -> Dict[str, object]:
        raise NotImplementedError

    def replace(self, coupon_id: int, coupon: Dict[str, object]) -> None:
        raise NotImplementedError

    def remove(self, coupon_id: int) -> bool:
        raise NotImplementedError

    def next_id(self) -> int:
        raise NotImplementedError


class MemoryCouponRepository(CouponRepository):
    def __init__(self, seed: Optional[List[Dict[str, object]]] = None):
        self.lock = threading.RLock()
        self._coupons: List[Dict[str, object]] = [dict(entry) for entry in seed or []]
        self._last_id = max((int(entry["id"]) for entry in self._coupons), default=0)

    def all(self):
        return list(self._coupons)

    def find_by_code(self, code):
        wanted = str(code or "").upper()
        for coupon in self._coupons:
            if str(coupon.get("code") or "").upper() == wanted:
                return coupon
        return None

    def find_by_id(self, coupon_id):
        for coupon in self._coupons:
            if coupon.get("id") == coupon_id:
                return coupon
        return None

    def insert(self, coupon):
        self._coupons.append(coupon)
        return coupon

    def replace(self, coupon_id, coupon):
        for index, existing in enumerate(self._coupons):
            if existing.get("id") == coupon_id:
                self._coupons[index] = coupon
                return

    def remove(self, coupon_id):
        for index, existing in enumerate(self._coupons):
            if existing.get("id") == coupon_id:
                del self._coupons[index]
                return True
        return False

    def next_id(self):
        self._last_id += 1
        return self._last_id


def _parse_coupon_id(value) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class CouponStore:
    def __init__(self, repository: CouponRepository, clock: Callable = utc_now):
        self.repository = repository
        self.clock = clock

    def list(self) -> List[Dict[str, object]]:
        return self.repository.all()

    def get_by_code(self, code: str) -> Dict[str, object]:
        coupon = self.repository.find_by_code(code)
        if not coupon or not coupon.get("isActive"):
            raise NotFoundError("Coupon not found or inactive")

        now = self.clock()
        valid_from = parse_iso_date(coupon.get("validFrom"))
        valid_until = parse_iso_date(coupon.get("validUntil"), end_of_day=True)
        if (valid_from and now < valid_from) or (valid_until and now >= valid_until):
            raise InvalidCouponError("Coupon has expired or is not yet valid")

        if safe_positive_int(coupon.get("usageCount"), 0) >= safe_positive_int(
            coupon.get("maxUsage"), 0
        ):
            raise CouponLimitReachedError("Coupon usage limit reached")

        return coupon

    def create(self, fields: Dict[str, object]) -> Dict[str, object]:
        fields = fields or {}
        code = str(fields.get("code") or "").strip()
        discount = safe_float(fields.get("discount"), 0.0)
        coupon_type = str(fields.get("type") or "").strip().lower()

        if not code or not discount or not coupon_type:
            raise BadRequestError("Missing required fields")
        if coupon_type not in COUPON_TYPES:
            raise BadRequestError("Coupon type must be 'percentage' or 'fixed'")

        today = self.clock().date()
        with self.repository.lock:
            if self.repository.find_by_code(code):
                raise ConflictError("Coupon code already exists")

            coupon = {
                "id": self.repository.next_id(),
                "code": code.upper(),
                "discount": discount,
                "type": coupon_type,
                "minAmount": safe_float(fields.get("minAmount"), 0.0) or 0,
                "maxDiscount": safe_float(fields.get("maxDiscount"), 0.0) or discount,
                "validFrom": fields.get("validFrom") or today.isoformat(),
                "validUntil": fields.get("validUntil")
                or (today + timedelta(days=DEFAULT_VALIDITY_DAYS)).isoformat(),
                "isActive": True,
                "usageCount": 0,
                "maxUsage": safe_positive_int(fields.get("maxUsage"), 0)
                or DEFAULT_MAX_USAGE,
            }
            self.repository.insert(coupon)

        logger.info("Created coupon %s", coupon["code"])
        return coupon

    def update(self, coupon_id, fields: Dict[str, object]) -> Dict[str, object]:
        parsed_id = _parse_coupon_id(coupon_id)
        with self.repository.lock:
            existing = self.repository.find_by_id(parsed_id)
            if existing is None:
                raise NotFoundError("Coupon not found")
            changes = {key: value for key, value in (fields or {}).items() if key != "id"}
            updated = {**existing, **changes}
            self.repository.replace(parsed_id, updated)
        return updated

    def delete(self, coupon_id) -> None:
        parsed_id = _parse_coupon_id(coupon_id)
        with self.repository.lock:
            if not self.repository.remove(parsed_id):
                raise NotFoundError("Coupon not found")

    def apply(self, code: str, total_amount) -> Dict[str, object]:
        total = safe_float(total_amount, 0.0)
        if not code or not total:
            raise BadRequestError("Missing required fields")

        coupon = self.get_by_code(code)

        min_amount = safe_float(coupon.get("minAmount"), 0.0)
        if total < min_amount:
            raise BadRequestError(
                f"Minimum order amount is ₪{format_amount(coupon.get('minAmount'))}"
            )

        discount_value = safe_float(coupon.get("discount"), 0.0)
        max_discount = safe_float(coupon.get("maxDiscount"), discount_value)
        if coupon.get("type") == "percentage":
            discount_amount = min(total * discount_value / 100, max_discount)
        else:
            discount_amount = min(discount_value, max_discount)

        # Plain float math; rounding happens only where amounts are displayed.
        final_amount = max(0, total - discount_amount)

        return {
            "coupon": copy.deepcopy(coupon),
            "originalAmount": total,
            "discountAmount": discount_amount,
            "finalAmount": final_amount,
        }

    def redeem(self, code: str) -> Optional[Dict[str, object]]:
        with self.repository.lock:
            coupon = self.repository.find_by_code(code)
            if coupon is None:
                logger.warning("Cannot redeem unknown coupon %s", code)
                return None
            updated = {
                **coupon,
                "usageCount": safe_positive_int(coupon.get("usageCount"), 0) + 1,
            }
            self.repository.replace(coupon["id"], updated)
        return updated
