"""
Basement Instance Provisioner
=============================

Bridges a purchase to a running droplet.

This is the "glue" that:
1. Rejects customers who already own a live instance, and payments
   that already started an attempt
2. Creates the instance record (status=provisioning) with a fresh login secret
3. Asks DigitalOcean for a droplet sized per plan, tagged to the customer
4. Launches a detached polling task that waits for the droplet to become
   active with an IPv4 address, then marks the instance running
5. Marks the instance failed if creation errors or the poll budget runs out;
   a failed creation is refunded when a refund hook is configured

The customer-facing request returns as soon as step 3 answers; the polling
task reports back only through the database.
"""

import asyncio
import logging
import secrets
import time
from enum import Enum
from typing import Callable, Dict, Optional, Set

from .config import PollingConfig
from .errors import ChargeAlreadyProcessedError, InstanceAlreadyExistsError, UnknownPlanError
from .models import Instance, InstanceState, PLAN_SPECS
from .providers.base import (
    CloudInstanceClient,
    CloudInstance,
    ProvisionConfig,
    SYSTEM_TAG,
    instance_name_prefix,
)
from .store import Store

logger = logging.getLogger(__name__)


# Installs nginx + certbot so customers can request certificates right away
SETUP_SCRIPT = """#!/bin/bash
apt-get update
apt-get install -y nginx certbot python3-certbot-nginx

ufw allow 'Nginx Full'
ufw allow OpenSSH
echo "y" | ufw enable

cat > /etc/nginx/sites-available/default << 'EOF'
server {
    listen 80 default_server;
    listen [::]:80 default_server;

    root /var/www/html;
    index index.html index.htm;

    server_name _;

    location / {
        try_files $uri $uri/ =404;
    }
}
EOF

systemctl restart nginx
systemctl enable nginx

echo "Setup complete!" > /root/setup.log
"""


class PollOutcome(Enum):
    READY = "ready"
    FAILED = "failed"
    ABANDONED = "abandoned"  # record gone or moved on by another writer


def generate_login_secret() -> str:
    """High-entropy root password, never reused across instances."""
    return secrets.token_urlsafe(24)


class InstanceProvisioner:
    """
    Creates instances and waits for them to become reachable.

    Usage:
        provisioner = InstanceProvisioner(
            store=Store(db_pool),
            cloud=DigitalOceanClient(api_token="..."),
            polling=PollingConfig(interval_seconds=10, max_attempts=30),
        )

        instance = await provisioner.create_instance("42", "basic", charge_reference="pi_123")
    """

    def __init__(
        self,
        store: Store,
        cloud: CloudInstanceClient,
        polling: Optional[PollingConfig] = None,
        region: str = "nyc3",
        image: str = "ubuntu-22-04-x64",
        system_tag: str = SYSTEM_TAG,
        refund: Optional[Callable[[str], str]] = None,
    ):
        self.store = store
        self.cloud = cloud
        self.polling = polling or PollingConfig()
        self.region = region
        self.image = image
        self.system_tag = system_tag
        # Called with the charge reference when droplet creation fails
        self.refund = refund

        # instance id -> running poll task
        self._polls: Dict[int, asyncio.Task] = {}

    @property
    def active_polls(self) -> int:
        return len(self._polls)

    def _build_config(self, instance: Instance) -> ProvisionConfig:
        return ProvisionConfig(
            name=f"{instance_name_prefix(instance.customer_id)}{int(time.time())}",
            size=instance.specs["slug"],
            region=self.region,
            image=self.image,
            user_data=SETUP_SCRIPT,
            tags=[self.system_tag],
            customer_id=instance.customer_id,
            metadata={"basement_instance_id": instance.id},
        )

    async def create_instance(
        self,
        customer_id: str,
        plan: str,
        charge_reference: Optional[str] = None,
    ) -> Instance:
        """
        Provision a new instance for a customer.

        Returns once the provider has accepted (or rejected) the create call.
        Readiness is tracked by a detached polling task.

        Raises:
            UnknownPlanError: plan is not offered
            InstanceAlreadyExistsError: customer already has a live instance
            ChargeAlreadyProcessedError: this payment already started an attempt
        """
        spec = PLAN_SPECS.get(plan)
        if spec is None:
            raise UnknownPlanError(plan)

        existing = await self.store.get_active_instance(customer_id)
        if existing:
            raise InstanceAlreadyExistsError(customer_id, existing.id)

        if charge_reference and not await self.store.claim_charge(charge_reference, customer_id):
            raise ChargeAlreadyProcessedError(charge_reference)

        instance = await self.store.create_instance(
            customer_id=customer_id,
            plan=plan,
            login_secret=generate_login_secret(),
            specs=dict(spec),
            charge_reference=charge_reference,
        )
        log_extra = {"instance_id": instance.id, "customer_id": customer_id}
        logger.info(f"Instance {instance.id} created for customer {customer_id} (plan={plan})", extra=log_extra)

        try:
            # Provider calls are synchronous - run in thread
            machine = await asyncio.to_thread(self.cloud.create, self._build_config(instance))
        except Exception as e:
            logger.error(f"Droplet creation failed for instance {instance.id}: {e}", extra=log_extra)
            await self.store.update_instance(instance.id, status=InstanceState.FAILED)
            instance.status = InstanceState.FAILED
            await self._refund_failed(instance)
            return instance

        updates = {}
        if machine.id:
            updates["provider_instance_id"] = machine.id
            instance.provider_instance_id = machine.id
        if machine.ip_address:
            updates["ip_address"] = machine.ip_address
            instance.ip_address = machine.ip_address
        if updates:
            await self.store.update_instance(instance.id, **updates)

        logger.info(f"Droplet {machine.id} requested for instance {instance.id}", extra=log_extra)

        # Always poll: the droplet may come back before its network is attached
        self.start_polling(instance.id)
        return instance

    async def _refund_failed(self, instance: Instance) -> Optional[str]:
        log_extra = {"instance_id": instance.id, "charge_reference": instance.charge_reference}
        if not instance.charge_reference:
            return None
        if self.refund is None:
            logger.error(
                f"Instance {instance.id} failed after payment {instance.charge_reference}, manual refund required",
                extra=log_extra,
            )
            return None

        try:
            refund_id = await asyncio.to_thread(self.refund, instance.charge_reference)
        except Exception as e:
            logger.error(
                f"Automatic refund of {instance.charge_reference} failed, manual refund required: {e}",
                extra=log_extra,
            )
            return None

        logger.info(f"Refunded {instance.charge_reference} for failed instance {instance.id}", extra=log_extra)
        return refund_id

    # =========================================
    # POLLING
    # =========================================

    def start_polling(self, instance_id: int) -> asyncio.Task:
        """Launch (or restart) the detached readiness poll for an instance."""
        previous = self._polls.pop(instance_id, None)
        if previous and not previous.done():
            previous.cancel()
            logger.info(f"Cleared existing poll for instance {instance_id}")

        task = asyncio.create_task(
            self.poll_until_ready(instance_id),
            name=f"poll-instance-{instance_id}",
        )
        self._polls[instance_id] = task
        task.add_done_callback(lambda t: self._on_poll_done(instance_id, t))
        logger.info(f"Started polling for instance {instance_id} ({len(self._polls)} active polls)")
        return task

    def _on_poll_done(self, instance_id: int, task: asyncio.Task) -> None:
        if self._polls.get(instance_id) is task:
            del self._polls[instance_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"Poll for instance {instance_id} crashed: {exc}", exc_info=exc)

    def _fetch_machine(self, instance: Instance, claimed: Set[str]) -> Optional[CloudInstance]:
        if instance.provider_instance_id:
            return self.cloud.get(instance.provider_instance_id)
        logger.warning(f"Instance {instance.id} has no provider id, falling back to tag lookup")
        return self.cloud.find_for_customer(instance.customer_id, self.system_tag, claimed)

    async def poll_until_ready(self, instance_id: int) -> PollOutcome:
        """
        Wait for the droplet to be active with an IPv4 address.

        Terminates after at most max_attempts polls: running on success,
        failed when the budget is exhausted. Fetch errors count as attempts.
        """
        interval = self.polling.interval_seconds
        max_attempts = self.polling.max_attempts
        attempts = 0

        while True:
            await asyncio.sleep(interval)
            attempts += 1

            instance = await self.store.get_instance(instance_id)
            if instance is None:
                logger.info(f"Instance {instance_id} was removed during provisioning, stopping poll")
                return PollOutcome.ABANDONED
            if instance.status != InstanceState.PROVISIONING:
                logger.info(f"Instance {instance_id} is {instance.status.value}, stopping poll")
                return PollOutcome.ABANDONED

            try:
                claimed = set()
                if not instance.provider_instance_id:
                    claimed = await self.store.claimed_provider_ids(instance.customer_id, exclude_instance_id=instance.id)
                machine = await asyncio.to_thread(self._fetch_machine, instance, claimed)
            except Exception as e:
                logger.warning(
                    f"Polling error for instance {instance_id}: {e}",
                    extra={"instance_id": instance_id, "attempt": attempts, "max_attempts": max_attempts},
                )
                machine = None

            if machine and not instance.provider_instance_id:
                await self.store.update_instance(instance_id, provider_instance_id=machine.id)

            if machine and machine.is_ready:
                if not await self.store.update_instance(
                    instance_id,
                    status=InstanceState.RUNNING,
                    ip_address=machine.ip_address,
                ):
                    return PollOutcome.ABANDONED
                logger.info(
                    f"Instance {instance_id} is now running at {machine.ip_address}",
                    extra={"instance_id": instance_id, "status": InstanceState.RUNNING, "attempt": attempts},
                )
                return PollOutcome.READY

            if attempts >= max_attempts:
                await self.store.update_instance(instance_id, status=InstanceState.FAILED)
                logger.error(
                    f"Instance {instance_id} provisioning failed - max attempts reached",
                    extra={"instance_id": instance_id, "status": InstanceState.FAILED, "max_attempts": max_attempts},
                )
                return PollOutcome.FAILED

    async def resume_pending(self) -> int:
        """
        Restart polling for instances left in provisioning by a previous process.

        Instances whose droplet id was never stored are matched by tag/name;
        when nothing matches they are marked failed.

        Returns:
            Number of polls started
        """
        pending = await self.store.list_instances(InstanceState.PROVISIONING)
        started = 0

        for instance in pending:
            if instance.id in self._polls:
                continue

            if not instance.provider_instance_id:
                claimed = await self.store.claimed_provider_ids(instance.customer_id, exclude_instance_id=instance.id)
                try:
                    machine = await asyncio.to_thread(
                        self.cloud.find_for_customer, instance.customer_id, self.system_tag, claimed,
                    )
                except Exception as e:
                    logger.warning(f"Recovery lookup failed for instance {instance.id}: {e}")
                    machine = None

                if machine is None:
                    logger.warning(
                        f"No droplet found for orphaned instance {instance.id}, marking failed",
                        extra={"instance_id": instance.id, "customer_id": instance.customer_id},
                    )
                    await self.store.update_instance(instance.id, status=InstanceState.FAILED)
                    continue

                logger.info(f"Recovered droplet {machine.id} for instance {instance.id} (degraded lookup)")
                await self.store.update_instance(instance.id, provider_instance_id=machine.id)

            self.start_polling(instance.id)
            started += 1

        if started:
            logger.info(f"Resumed polling for {started} provisioning instance(s)")
        return started

    async def shutdown(self) -> None:
        """Cancel all in-flight polls."""
        tasks = list(self._polls.values())
        logger.info(f"Cleaning up {len(tasks)} active polling task(s)")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._polls.clear()
