"""
Stripe webhook dispatch.

Routes verified payment events to the provisioning and teardown
workflows. Every handler is safe to replay: a refund finds no record the
second time, and a payment is provisioned at most once per charge.
"""

import logging
from typing import Any, Dict, Optional

import stripe

from .errors import ChargeAlreadyProcessedError, InstanceAlreadyExistsError, UnknownPlanError
from .provisioner import InstanceProvisioner
from .teardown import TeardownHandler

logger = logging.getLogger(__name__)


def construct_event(payload: bytes, sig_header: Optional[str], secret: str):
    """
    Verify a webhook signature and parse the event.

    Raises:
        stripe.SignatureVerificationError: bad or missing signature
        ValueError: payload is not valid JSON
    """
    return stripe.Webhook.construct_event(payload, sig_header, secret)


async def handle_charge_refunded(charge: Dict[str, Any], teardown: TeardownHandler) -> Dict[str, Any]:
    # Instances record the payment intent; older ones stored the charge id
    references = [ref for ref in (charge.get("payment_intent"), charge.get("id")) if ref]

    for reference in references:
        result = await teardown.handle_refund(reference)
        if result.found:
            return {
                "action": "teardown",
                "instance_id": result.instance_id,
                "machine_deleted": result.machine_deleted,
            }

    logger.info(f"Refund for charge {charge.get('id')} matched no instance")
    return {"action": "none"}


async def handle_payment_succeeded(intent: Dict[str, Any], provisioner: InstanceProvisioner) -> Dict[str, Any]:
    metadata = intent.get("metadata") or {}
    customer_id = metadata.get("user_id")
    plan = metadata.get("plan")

    if not customer_id or not plan:
        logger.info(f"PaymentIntent {intent.get('id')} has no user_id/plan metadata, ignoring")
        return {"action": "none"}

    try:
        instance = await provisioner.create_instance(
            customer_id=str(customer_id),
            plan=plan,
            charge_reference=intent.get("id"),
        )
    except InstanceAlreadyExistsError as e:
        logger.info(
            f"Customer {customer_id} already has instance {e.instance_id}, skipping provisioning",
            extra={"customer_id": str(customer_id)},
        )
        return {"action": "skipped", "reason": "instance_exists"}
    except ChargeAlreadyProcessedError:
        logger.info(
            f"PaymentIntent {intent.get('id')} already processed, skipping provisioning",
            extra={"customer_id": str(customer_id), "charge_reference": intent.get("id")},
        )
        return {"action": "skipped", "reason": "charge_processed"}
    except UnknownPlanError as e:
        logger.warning(f"PaymentIntent {intent.get('id')}: {e}")
        return {"action": "skipped", "reason": "unknown_plan"}

    return {"action": "provisioned", "instance_id": instance.id, "status": instance.status.value}


async def handle_stripe_event(
    event,
    provisioner: InstanceProvisioner,
    teardown: TeardownHandler,
) -> Dict[str, Any]:
    """Dispatch a verified Stripe event. Unhandled types are acknowledged and ignored."""
    event_type = event["type"]
    obj = event["data"]["object"]
    logger.info(f"Stripe webhook received: {event_type}")

    if event_type == "charge.refunded":
        return await handle_charge_refunded(obj, teardown)

    if event_type == "payment_intent.succeeded":
        return await handle_payment_succeeded(obj, provisioner)

    logger.debug(f"Unhandled event type: {event_type}")
    return {"action": "ignored"}
