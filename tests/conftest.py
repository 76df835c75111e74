"""
Basement Test Fixtures
======================

Shared fixtures for all test modules.
"""

import itertools
from typing import Dict, List, Optional

import pytest

from basement_core.config import PollingConfig, VerificationConfig
from basement_core.models import InstanceState, PLAN_SPECS
from basement_core.providers.base import (
    CloudInstanceClient,
    CloudInstance,
    CloudStatus,
    ProvisionConfig,
    ProviderError,
    ProviderResourceError,
)
from basement_core.store import Store


# ============================================
# FAKE CLOUD PROVIDER
# ============================================

class FakeCloudClient(CloudInstanceClient):
    """
    In-memory droplet API.

    Machines come back as "new" without an IP and turn active after
    `ready_after` fetches. Errors are injected per operation.
    """
    PROVIDER_ID = "fake"
    PROVIDER_NAME = "Fake Provider"

    def __init__(self, ready_after: int = 1, ip_prefix: str = "203.0.113."):
        self.machines: Dict[str, CloudInstance] = {}
        self.ready_after = ready_after
        self.ip_prefix = ip_prefix
        self.create_error: Optional[Exception] = None
        self.get_errors: List[Exception] = []
        self.delete_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.created_configs: List[ProvisionConfig] = []
        self.deleted: List[str] = []
        self.get_calls = 0
        self._fetches: Dict[str, int] = {}
        self._ids = itertools.count(1001)

    def add_machine(self, name: str, tags: List[str], status=CloudStatus.ACTIVE, ip="198.51.100.7") -> CloudInstance:
        machine = CloudInstance(id=str(next(self._ids)), name=name, status=status, ip_address=ip, tags=list(tags))
        self.machines[machine.id] = machine
        return machine

    def create(self, config: ProvisionConfig) -> CloudInstance:
        if self.create_error:
            raise self.create_error
        self.created_configs.append(config)
        machine = CloudInstance(
            id=str(next(self._ids)),
            name=config.name,
            status=CloudStatus.NEW,
            tags=list(config.tags),
            region=config.region,
            size=config.size,
        )
        self.machines[machine.id] = machine
        return CloudInstance(**vars(machine))

    def get(self, instance_id: str) -> Optional[CloudInstance]:
        self.get_calls += 1
        if self.get_errors:
            raise self.get_errors.pop(0)
        machine = self.machines.get(instance_id)
        if machine is None:
            return None

        self._fetches[instance_id] = self._fetches.get(instance_id, 0) + 1
        if self.ready_after and self._fetches[instance_id] >= self.ready_after and machine.status == CloudStatus.NEW:
            machine.status = CloudStatus.ACTIVE
            machine.ip_address = f"{self.ip_prefix}{int(instance_id) % 250}"
        return CloudInstance(**vars(machine))

    def delete(self, instance_id: str) -> bool:
        if self.delete_error:
            raise self.delete_error
        if instance_id not in self.machines:
            raise ProviderResourceError(self.PROVIDER_ID, f"Resource not found: /droplets/{instance_id}")
        del self.machines[instance_id]
        self.deleted.append(instance_id)
        return True

    def list_by_tag(self, tag: str) -> List[CloudInstance]:
        if self.list_error:
            raise self.list_error
        return [CloudInstance(**vars(m)) for m in self.machines.values() if tag in m.tags]


@pytest.fixture
def fake_cloud():
    """A fake droplet API that becomes ready on the first fetch."""
    return FakeCloudClient()


@pytest.fixture
def provider_error():
    return ProviderError("fake", "API error: boom")


# ============================================
# CONFIG
# ============================================

@pytest.fixture
def fast_polling():
    """Polling that never sleeps and gives up after 5 attempts."""
    return PollingConfig(interval_seconds=0, max_attempts=5)


@pytest.fixture
def verification_config():
    return VerificationConfig(dns_lifetime_seconds=1, tls_timeout_seconds=1)


# ============================================
# STORE
# ============================================

@pytest.fixture
def store():
    """In-memory record store."""
    return Store()


@pytest.fixture
def running_instance(store):
    """Factory for an instance that already finished provisioning."""

    async def _make(customer_id="42", ip="203.0.113.10", provider_id="1001", charge_reference=None):
        instance = await store.create_instance(
            customer_id,
            "basic",
            login_secret="s3cret-login",
            specs=dict(PLAN_SPECS["basic"]),
            charge_reference=charge_reference or f"pi_{customer_id}",
        )
        await store.update_instance(
            instance.id,
            status=InstanceState.RUNNING,
            ip_address=ip,
            provider_instance_id=provider_id,
        )
        return await store.get_instance(instance.id)

    return _make


# ============================================
# PROVISIONING
# ============================================

@pytest.fixture
def provisioner(store, fake_cloud, fast_polling):
    from basement_core.provisioner import InstanceProvisioner

    return InstanceProvisioner(store, fake_cloud, polling=fast_polling)


@pytest.fixture
def teardown_handler(store, fake_cloud):
    from basement_core.teardown import TeardownHandler

    return TeardownHandler(store, fake_cloud)


# ============================================
# STRIPE EVENTS
# ============================================

@pytest.fixture
def refund_event():
    """Stripe charge.refunded event."""
    return {
        "id": "evt_refund_123",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_test_123",
                "object": "charge",
                "payment_intent": "pi_test_123",
                "amount_refunded": 1500,
            },
        },
    }


@pytest.fixture
def payment_event():
    """Stripe payment_intent.succeeded event."""
    return {
        "id": "evt_payment_123",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_test_123",
                "object": "payment_intent",
                "amount": 1500,
                "metadata": {
                    "user_id": "42",
                    "plan": "basic",
                },
            },
        },
    }
