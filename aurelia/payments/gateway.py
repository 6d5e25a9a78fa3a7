# aurelia/payments/gateway.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

import razorpay
import requests
from razorpay.errors import BadRequestError, ServerError
from razorpay.errors import GatewayError as RazorpayGatewayError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import GatewayError, InvalidRequest
from ..models import Payment

logger = logging.getLogger(__name__)

# every failure the SDK call can surface
GATEWAY_FAILURES = (
    BadRequestError,
    RazorpayGatewayError,
    ServerError,
    requests.RequestException,
    ValueError,  # non-JSON body
)


class RazorpayOrders:
    """Creates gateway-side orders so the browser checkout widget can collect payment."""

    def __init__(self, settings: Settings, db: Session, client: razorpay.Client):
        self.settings = settings
        self.db = db
        self.client = client

    def create(self, user_id: str, order_id: str, amount: float) -> Dict[str, Any]:
        if not order_id or not amount:
            raise InvalidRequest("order_id and amount are required")

        logger.info("Creating Razorpay order for amount %s", amount)

        try:
            rp_order = self.client.order.create(
                {
                    "amount": int(round(amount * 100)),  # paise
                    "currency": self.settings.currency,
                    "receipt": order_id,
                    "notes": {"order_id": order_id, "user_id": user_id},
                },
                timeout=self.settings.http_timeout_seconds,
            )
        except GATEWAY_FAILURES as exc:
            logger.error("Razorpay error: %r", exc)
            raise GatewayError() from exc

        if not isinstance(rp_order, dict) or not rp_order.get("id"):
            logger.error("Unexpected Razorpay order response: %r", rp_order)
            raise GatewayError()

        logger.info("Razorpay order created: %s", rp_order["id"])

        try:
            payment = self.db.query(Payment).filter(Payment.order_id == order_id).first()
            if payment is None:
                logger.warning("No payment row for order %s", order_id)
            else:
                payment.razorpay_order_id = rp_order["id"]
                payment.updated_at = datetime.utcnow()
                self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Error updating payment for order %s", order_id)

        return {
            "razorpay_order_id": rp_order["id"],
            "razorpay_key_id": self.settings.razorpay_key_id,
            "amount": rp_order.get("amount"),
            "currency": rp_order.get("currency"),
        }
