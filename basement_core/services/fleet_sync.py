"""
Fleet sync: marks running instances whose droplet vanished as deleted.

Catches droplets destroyed outside the control plane (console, API,
billing suspension) so the dashboard stops showing them as running.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from ..config import FleetSyncConfig
from ..models import Instance, InstanceState
from ..providers.base import CloudInstance, CloudInstanceClient, SYSTEM_TAG, owned_by
from ..store import Store

logger = logging.getLogger(__name__)


@dataclass
class FleetSyncSummary:
    checked: int = 0
    machines: int = 0
    marked_deleted: List[int] = field(default_factory=list)


def _machine_exists(instance: Instance, machines: List[CloudInstance], claimed: Set[str]) -> bool:
    if instance.provider_instance_id:
        return any(m.id == instance.provider_instance_id for m in machines)

    # Degraded: no stored droplet id
    return any(m.id not in claimed and owned_by(m, instance.customer_id) for m in machines)


class FleetSync:
    """
    Compares running instances with the provider's tagged droplets.

    Usage:
        sync = FleetSync(store, DigitalOceanClient(api_token="..."))
        summary = await sync.sync()
    """

    def __init__(
        self,
        store: Store,
        cloud: CloudInstanceClient,
        config: Optional[FleetSyncConfig] = None,
        system_tag: str = SYSTEM_TAG,
    ):
        self.store = store
        self.cloud = cloud
        self.config = config or FleetSyncConfig()
        self.system_tag = system_tag
        self._running = False

    async def start(self):
        """Start the sync loop."""
        self._running = True
        logger.info(f"Fleet sync started (first run in {self.config.initial_delay_seconds:.0f}s)")

        await asyncio.sleep(self.config.initial_delay_seconds)

        while self._running:
            try:
                await self.sync()
            except Exception as e:
                logger.error(f"Fleet sync cycle failed: {e}")

            await asyncio.sleep(self.config.interval_seconds)

    def stop(self):
        """Stop the sync loop."""
        self._running = False
        logger.info("Fleet sync stopped")

    async def sync(self) -> Optional[FleetSyncSummary]:
        """
        Run one pass.

        Returns:
            Summary, or None if the provider listing failed (nothing changed)
        """
        running = await self.store.list_instances(InstanceState.RUNNING)
        if not running:
            logger.debug("No running instances to sync")
            return FleetSyncSummary()

        try:
            machines = await asyncio.to_thread(self.cloud.list_by_tag, self.system_tag)
        except Exception as e:
            logger.error(f"Error listing droplets, skipping sync: {e}")
            return None

        summary = FleetSyncSummary(checked=len(running), machines=len(machines))
        logger.info(f"Found {len(running)} running instance(s) in DB, {len(machines)} droplet(s) at provider")

        for instance in running:
            claimed = set()
            if not instance.provider_instance_id:
                claimed = await self.store.claimed_provider_ids(instance.customer_id, exclude_instance_id=instance.id)
            if _machine_exists(instance, machines, claimed):
                continue

            logger.warning(
                f"Droplet missing for instance {instance.id} (customer {instance.customer_id}), marking deleted",
                extra={"instance_id": instance.id, "customer_id": instance.customer_id},
            )
            if await self.store.update_instance(instance.id, status=InstanceState.DELETED):
                summary.marked_deleted.append(instance.id)

        return summary
