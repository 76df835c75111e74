"""
Stripe refunds for purchases that never produced a machine.
"""

import logging

import stripe

logger = logging.getLogger(__name__)


def refund_payment(charge_reference: str) -> str:
    """
    Refund a payment in full.

    Accepts a PaymentIntent id or, for older records, a Charge id. The
    idempotency key makes repeated calls for the same payment a no-op at
    Stripe.

    Returns:
        Stripe refund id

    Raises:
        stripe.StripeError: refund rejected or Stripe unreachable
    """
    if charge_reference.startswith("ch_"):
        params = {"charge": charge_reference}
    else:
        params = {"payment_intent": charge_reference}

    refund = stripe.Refund.create(
        **params,
        metadata={"reason": "provisioning_failed"},
        idempotency_key=f"basement-refund-{charge_reference}",
    )
    logger.info(f"Refund {refund.id} issued for {charge_reference}", extra={"charge_reference": charge_reference})
    return refund.id
