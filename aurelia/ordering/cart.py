# aurelia/ordering/cart.py
from __future__ import annotations

import json
from typing import Any, Dict, List

FREE_DELIVERY_ABOVE = 500.0
DELIVERY_FEE = 50.0
TAX_RATE = 0.05  # GST


def load_cart(items_json: str | None) -> List[Dict[str, Any]]:
    try:
        v = json.loads(items_json or "[]")
        return v if isinstance(v, list) else []
    except ValueError:
        return []


def dump_cart(cart: List[Dict[str, Any]]) -> str:
    return json.dumps(cart, ensure_ascii=False)


def recalc_line_total(line: Dict[str, Any]) -> None:
    qty = int(line.get("qty", 1) or 1)
    price = float(line.get("price", 0.0) or 0.0)
    line["line_total"] = round(qty * price, 2)


def cart_subtotal(cart: List[Dict[str, Any]]) -> float:
    return round(sum(float(x.get("line_total", 0.0) or 0.0) for x in cart), 2)


def price_breakdown(subtotal: float) -> Dict[str, float]:
    delivery_fee = 0.0 if subtotal > FREE_DELIVERY_ABOVE else DELIVERY_FEE
    tax = round(subtotal * TAX_RATE, 2)
    return {
        "subtotal": round(subtotal, 2),
        "tax_amount": tax,
        "delivery_fee": delivery_fee,
        "total_amount": round(subtotal + tax + delivery_fee, 2),
    }
