from typing import Dict, List, Optional

from .utils import safe_float, safe_positive_int


def cart_item_id(product: Dict[str, object], color: Optional[Dict[str, object]] = None) -> str:
    product_id = str(product.get("id") or product.get("_id") or "").strip()
    color_name = str((color or {}).get("name") or "").strip()
    if color_name:
        return f"{product_id}-{color_name}"
    return product_id


def add_to_cart(
    cart: List[Dict[str, object]],
    product: Dict[str, object],
    color: Optional[Dict[str, object]] = None,
) -> List[Dict[str, object]]:
    unique_id = cart_item_id(product, color)
    if any(item.get("uniqueId") == unique_id for item in cart):
        return [
            {**item, "quantity": safe_positive_int(item.get("quantity"), 1) + 1}
            if item.get("uniqueId") == unique_id
            else item
            for item in cart
        ]

    entry = {**product, "quantity": 1, "uniqueId": unique_id}
    if color:
        entry["selectedColor"] = color
    return [*cart, entry]


def remove_from_cart(cart: List[Dict[str, object]], unique_id: str) -> List[Dict[str, object]]:
    return [item for item in cart if item.get("uniqueId") != unique_id]


def update_quantity(
    cart: List[Dict[str, object]], unique_id: str, quantity
) -> List[Dict[str, object]]:
    new_quantity = safe_positive_int(quantity, 0)
    if new_quantity < 1:
        return cart
    return [
        {**item, "quantity": new_quantity} if item.get("uniqueId") == unique_id else item
        for item in cart
    ]


def calculate_cart_totals(items: List[Dict[str, object]]) -> Dict[str, float]:
    subtotal = 0.0
    item_count = 0
    for item in items or []:
        if not isinstance(item, dict):
            continue
        quantity = safe_positive_int(item.get("quantity"), 1) or 1
        subtotal += safe_float(item.get("price"), 0.0) * quantity
        item_count += quantity
    return {"subtotal": subtotal, "itemCount": item_count}
