# aurelia/payments/settlement.py
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional

import razorpay
from razorpay.errors import SignatureVerificationError
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import InvalidRequest, SignatureInvalid
from ..models import Order, Payment, Profile

logger = logging.getLogger(__name__)

# 1 point per 10 currency units
POINTS_PER_CURRENCY_UNIT = 10


def loyalty_points_for(total_amount: Optional[float]) -> int:
    return max(0, math.floor((total_amount or 0) / POINTS_PER_CURRENCY_UNIT))


class PaymentSettlement:
    """Verify a gateway callback and move the order from pending to confirmed.

    The signature check is the only gate the caller sees. Once it passes,
    bookkeeping runs in a single transaction; if that transaction fails it is
    logged and the caller still gets a success response.
    """

    def __init__(self, db: Session, client: razorpay.Client):
        self.db = db
        self.client = client

    def verify(self, razorpay_order_id: str, razorpay_payment_id: str, razorpay_signature: str) -> None:
        try:
            ok = self.client.utility.verify_payment_signature({
                "razorpay_order_id": razorpay_order_id,
                "razorpay_payment_id": razorpay_payment_id,
                "razorpay_signature": razorpay_signature,
            })
        except SignatureVerificationError as exc:
            raise SignatureInvalid() from exc
        if ok is False:
            raise SignatureInvalid()

    def settle(
        self,
        user_id: str,
        razorpay_order_id: Optional[str],
        razorpay_payment_id: Optional[str],
        razorpay_signature: Optional[str],
        order_id: Optional[str],
    ) -> Dict[str, Any]:
        if not (razorpay_order_id and razorpay_payment_id and razorpay_signature and order_id):
            raise InvalidRequest("All payment details are required")

        logger.info("Verifying Razorpay payment %s", razorpay_payment_id)

        try:
            self.verify(razorpay_order_id, razorpay_payment_id, razorpay_signature)
        except SignatureInvalid:
            logger.error("Signature verification failed for order %s", order_id)
            raise

        logger.info("Payment signature verified for order %s", order_id)

        try:
            self._apply(user_id, order_id, razorpay_payment_id, razorpay_signature)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Bookkeeping failed after verified payment on order %s", order_id)

        return {
            "success": True,
            "message": "Payment verified successfully",
            "order_id": order_id,
        }

    def _apply(self, user_id: str, order_id: str, payment_id: str, signature: str) -> None:
        now = datetime.utcnow()

        payment = self.db.query(Payment).filter(Payment.order_id == order_id).first()
        if payment is None:
            logger.warning("No payment row for order %s", order_id)
        else:
            payment.razorpay_payment_id = payment_id
            payment.razorpay_signature = signature
            payment.status = "completed"
            payment.updated_at = now

        order = self.db.get(Order, order_id)
        if order is None:
            logger.warning("Order %s not found", order_id)
            self.db.commit()
            return

        order.status = "confirmed"
        order.updated_at = now
        points = loyalty_points_for(order.total_amount)

        # loyalty_points_earned doubles as the "already credited" marker;
        # only the retry that sets it gets to credit the profile
        claimed = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.loyalty_points_earned.is_(None))
            .values(loyalty_points_earned=points)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            logger.info("Loyalty already credited for order %s; skipping", order_id)
            self.db.commit()
            return

        credited = self.db.execute(
            update(Profile)
            .where(Profile.user_id == user_id)
            .values(
                loyalty_points=func.coalesce(Profile.loyalty_points, 0) + points,
                total_orders=func.coalesce(Profile.total_orders, 0) + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if credited != 1:
            logger.warning("No profile for user %s; loyalty not credited", user_id)

        self.db.commit()
        logger.info("Order %s confirmed, %s loyalty points earned", order_id, points)
