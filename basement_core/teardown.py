"""
Refund-driven instance teardown.

A refunded charge releases the customer's droplet and drops the instance
record. Every step tolerates a partial earlier run, so webhook replays are
harmless.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import InstanceNotFoundError
from .models import Instance, InstanceState
from .providers.base import CloudInstanceClient, ProviderResourceError, SYSTEM_TAG
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class TeardownResult:
    """What a teardown actually did."""
    charge_reference: Optional[str] = None
    instance_id: Optional[int] = None
    provider_instance_id: Optional[str] = None
    machine_deleted: bool = False
    record_deleted: bool = False
    degraded_lookup: bool = False

    @property
    def found(self) -> bool:
        return self.instance_id is not None


class TeardownHandler:
    """
    Destroys the cloud machine behind an instance and removes its record.

    Usage:
        handler = TeardownHandler(store, DigitalOceanClient(api_token="..."))
        result = await handler.handle_refund("pi_3Nx...")
    """

    def __init__(self, store: Store, cloud: CloudInstanceClient, system_tag: str = SYSTEM_TAG):
        self.store = store
        self.cloud = cloud
        self.system_tag = system_tag

    async def handle_refund(self, charge_reference: str) -> TeardownResult:
        """Tear down the instance bought with a charge. Unknown charges are a no-op."""
        result = TeardownResult(charge_reference=charge_reference)

        instance = await self.store.get_instance_by_charge(charge_reference)
        if not instance:
            logger.info(
                f"No instance found for refunded charge {charge_reference}",
                extra={"charge_reference": charge_reference},
            )
            return result

        logger.info(
            f"Refund received for instance {instance.id} (customer {instance.customer_id})",
            extra={"instance_id": instance.id, "charge_reference": charge_reference},
        )
        return await self._teardown(instance, result)

    async def destroy_instance(self, instance_id: int) -> TeardownResult:
        """
        Operator-initiated teardown by internal id.

        Raises:
            InstanceNotFoundError: no such instance
        """
        instance = await self.store.get_instance(instance_id)
        if not instance:
            raise InstanceNotFoundError(instance_id)

        return await self._teardown(instance, TeardownResult(charge_reference=instance.charge_reference))

    async def _find_machine(self, instance: Instance, result: TeardownResult) -> Optional[str]:
        """Degraded lookup by tag/name, ignoring droplets linked to the customer's other records."""
        log_extra = {"instance_id": instance.id, "customer_id": instance.customer_id}
        result.degraded_lookup = True
        logger.warning(
            f"Instance {instance.id} has no stored droplet id, searching by tag (degraded)",
            extra=log_extra,
        )

        claimed = await self.store.claimed_provider_ids(instance.customer_id, exclude_instance_id=instance.id)
        try:
            machine = await asyncio.to_thread(
                self.cloud.find_for_customer, instance.customer_id, self.system_tag, claimed,
            )
        except Exception as e:
            logger.error(f"Droplet lookup failed for instance {instance.id}: {e}", extra=log_extra)
            return None
        return machine.id if machine else None

    async def _teardown(self, instance: Instance, result: TeardownResult) -> TeardownResult:
        result.instance_id = instance.id
        log_extra = {"instance_id": instance.id, "customer_id": instance.customer_id}

        provider_id = instance.provider_instance_id
        if not provider_id and instance.status == InstanceState.FAILED:
            # Creation was rejected; no droplet was ever made for this record
            logger.info(f"Instance {instance.id} failed before a droplet existed, skipping droplet lookup", extra=log_extra)
        elif not provider_id:
            provider_id = await self._find_machine(instance, result)

        result.provider_instance_id = provider_id

        if provider_id:
            try:
                await asyncio.to_thread(self.cloud.delete, provider_id)
                result.machine_deleted = True
                logger.info(f"Droplet {provider_id} destroyed for instance {instance.id}", extra=log_extra)
            except ProviderResourceError:
                logger.warning(f"Droplet {provider_id} already gone", extra=log_extra)
            except Exception as e:
                logger.error(f"Error destroying droplet {provider_id}: {e}", extra=log_extra)
        else:
            logger.warning(f"No droplet found for instance {instance.id}", extra=log_extra)

        result.record_deleted = await self.store.delete_instance(instance.id)
        logger.info(f"Instance {instance.id} removed", extra=log_extra)
        return result
