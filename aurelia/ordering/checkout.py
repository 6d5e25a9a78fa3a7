# aurelia/ordering/checkout.py
from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..errors import InvalidRequest
from ..models import Order, Payment
from .cart import cart_subtotal, dump_cart, price_breakdown, recalc_line_total

logger = logging.getLogger(__name__)


def new_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def place_order(
    db: Session,
    user_id: str,
    items: List[Dict[str, Any]],
    currency: str = "INR",
    delivery_address: Optional[str] = None,
    delivery_city: Optional[str] = None,
    delivery_pincode: Optional[str] = None,
    special_instructions: Optional[str] = None,
) -> Order:
    """Create a pending order and its pending payment from cart lines."""
    if not items:
        raise InvalidRequest("Order is empty")

    cart = []
    for it in items:
        line = {
            "name": str(it.get("name", "Item")),
            "qty": int(it.get("qty", 1) or 1),
            "price": float(it.get("price", 0.0) or 0.0),
            "menu_item_id": it.get("menu_item_id"),
        }
        recalc_line_total(line)
        cart.append(line)

    prices = price_breakdown(cart_subtotal(cart))

    order = Order(
        order_number=new_order_number(),
        user_id=user_id,
        status="pending",
        items_json=dump_cart(cart),
        delivery_address=delivery_address,
        delivery_city=delivery_city,
        delivery_pincode=delivery_pincode,
        special_instructions=special_instructions,
        **prices,
    )
    db.add(order)
    db.flush()

    db.add(Payment(order_id=order.id, amount=order.total_amount, currency=currency, status="pending"))
    db.commit()
    db.refresh(order)

    logger.info("Order %s placed by %s (total %.2f)", order.order_number, user_id, order.total_amount)
    return order
