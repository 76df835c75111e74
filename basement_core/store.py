"""
Basement Record Store
=====================

CRUD access to Instance and Domain records.

Backed by PostgreSQL (asyncpg pool) in production. When no pool is given,
records live in process memory, which is what the test suite and local
development use.

Usage:
    store = Store(db_pool=pool)
    instance = await store.create_instance("42", "basic", login_secret="...")
    await store.update_instance(instance.id, status=InstanceState.RUNNING)
"""

import copy
import logging
from enum import Enum
from typing import Optional, Dict, Any, List, Set, Tuple

import asyncpg

from . import database
from .errors import InstanceAlreadyExistsError
from .models import Instance, Domain, InstanceState, SSLStatus, normalize_hostname, utcnow

logger = logging.getLogger(__name__)


def _db_value(value):
    return value.value if isinstance(value, Enum) else value


class Store:
    """Relational store for instances and domains."""

    def __init__(self, db_pool=None):
        """
        Args:
            db_pool: asyncpg connection pool (optional, uses in-memory if not provided)
        """
        self.db_pool = db_pool

        # In-memory storage fallback (when db_pool is None)
        self._instances: Dict[int, Instance] = {}
        self._domains: Dict[int, Domain] = {}
        self._charges: Dict[str, str] = {}
        self._next_instance_id = 1
        self._next_domain_id = 1

    # =========================================
    # INSTANCES
    # =========================================

    async def create_instance(
        self,
        customer_id: str,
        plan: str,
        login_secret: str,
        specs: Optional[Dict[str, Any]] = None,
        charge_reference: Optional[str] = None,
    ) -> Instance:
        """
        Insert an instance in the provisioning state.

        Raises:
            InstanceAlreadyExistsError: customer already has a non-terminal instance
        """
        specs = specs or {}

        if self.db_pool:
            try:
                row = await database.insert_instance(
                    self.db_pool, customer_id, plan, login_secret, specs, charge_reference,
                )
            except asyncpg.UniqueViolationError:
                raise InstanceAlreadyExistsError(customer_id)
            return Instance.from_row(row)

        existing = await self.get_active_instance(customer_id)
        if existing:
            raise InstanceAlreadyExistsError(customer_id, existing.id)

        instance = Instance(
            id=self._next_instance_id,
            customer_id=customer_id,
            plan=plan,
            login_secret=login_secret,
            specs=dict(specs),
            charge_reference=charge_reference,
            created_at=utcnow(),
        )
        self._next_instance_id += 1
        self._instances[instance.id] = instance
        return copy.deepcopy(instance)

    async def get_instance(self, instance_id: int) -> Optional[Instance]:
        if self.db_pool:
            row = await database.get_instance(self.db_pool, instance_id)
            return Instance.from_row(row) if row else None

        instance = self._instances.get(instance_id)
        return copy.deepcopy(instance) if instance else None

    async def get_active_instance(self, customer_id: str) -> Optional[Instance]:
        """Get the customer's non-terminal instance, if any."""
        if self.db_pool:
            row = await database.get_active_instance_for_customer(self.db_pool, customer_id)
            return Instance.from_row(row) if row else None

        for instance in self._instances.values():
            if instance.customer_id == customer_id and not instance.status.is_terminal:
                return copy.deepcopy(instance)
        return None

    async def get_instance_by_charge(self, charge_reference: str) -> Optional[Instance]:
        if self.db_pool:
            row = await database.get_instance_by_charge_reference(self.db_pool, charge_reference)
            return Instance.from_row(row) if row else None

        matches = [i for i in self._instances.values() if i.charge_reference == charge_reference]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda i: i.created_at))

    async def list_instances(self, status: InstanceState) -> List[Instance]:
        if self.db_pool:
            rows = await database.list_instances_by_status(self.db_pool, status.value)
            return [Instance.from_row(row) for row in rows]

        return [
            copy.deepcopy(i)
            for i in sorted(self._instances.values(), key=lambda i: i.id)
            if i.status == status
        ]

    async def update_instance(self, instance_id: int, **fields) -> bool:
        """
        Update status / provider id / IP of one instance.

        Returns:
            False if the record no longer exists
        """
        if self.db_pool:
            return await database.update_instance(
                self.db_pool,
                instance_id,
                **{key: _db_value(value) for key, value in fields.items()},
            )

        unknown = set(fields) - database.INSTANCE_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update instance columns: {sorted(unknown)}")

        instance = self._instances.get(instance_id)
        if not instance:
            return False
        for key, value in fields.items():
            if key == "status":
                value = InstanceState(value)
            setattr(instance, key, value)
        return True

    async def delete_instance(self, instance_id: int) -> bool:
        """Delete an instance row; its domains go with it."""
        if self.db_pool:
            return await database.delete_instance(self.db_pool, instance_id)

        if self._instances.pop(instance_id, None) is None:
            return False
        for domain_id in [d.id for d in self._domains.values() if d.instance_id == instance_id]:
            del self._domains[domain_id]
        return True

    async def claimed_provider_ids(self, customer_id: str, exclude_instance_id: Optional[int] = None) -> Set[str]:
        """Droplet ids linked to the customer's other instance rows."""
        if self.db_pool:
            return set(await database.list_provider_ids_for_customer(
                self.db_pool, customer_id, exclude_instance_id,
            ))

        return {
            i.provider_instance_id
            for i in self._instances.values()
            if i.customer_id == customer_id and i.provider_instance_id and i.id != exclude_instance_id
        }

    async def claim_charge(self, charge_reference: str, customer_id: str) -> bool:
        """
        Record that a charge started provisioning.

        The claim survives deletion of the instance row.

        Returns:
            False if the charge was claimed before
        """
        if self.db_pool:
            return await database.claim_charge(self.db_pool, charge_reference, customer_id)

        if charge_reference in self._charges:
            return False
        self._charges[charge_reference] = customer_id
        return True

    # =========================================
    # DOMAINS
    # =========================================

    async def add_domain(self, instance_id: int, hostname: str) -> Domain:
        hostname = normalize_hostname(hostname)

        if self.db_pool:
            row = await database.insert_domain(self.db_pool, instance_id, hostname)
            return Domain.from_row(row)

        if instance_id not in self._instances:
            raise ValueError(f"Instance {instance_id} does not exist")
        if any(d.hostname == hostname for d in self._domains.values()):
            raise ValueError(f"Domain {hostname} is already registered")

        domain = Domain(
            id=self._next_domain_id,
            instance_id=instance_id,
            hostname=hostname,
            created_at=utcnow(),
        )
        self._next_domain_id += 1
        self._domains[domain.id] = domain
        return copy.deepcopy(domain)

    async def get_domain(self, domain_id: int) -> Optional[Domain]:
        if self.db_pool:
            row = await database.get_domain(self.db_pool, domain_id)
            return Domain.from_row(row) if row else None

        domain = self._domains.get(domain_id)
        return copy.deepcopy(domain) if domain else None

    async def remove_domain(self, domain_id: int) -> bool:
        if self.db_pool:
            return await database.delete_domain(self.db_pool, domain_id)
        return self._domains.pop(domain_id, None) is not None

    async def mark_certificate_requested(self, domain_id: int) -> bool:
        """Set the initial 'pending' status when a certificate request is submitted."""
        if self.db_pool:
            return await database.set_domain_pending(self.db_pool, domain_id)

        domain = self._domains.get(domain_id)
        if not domain:
            return False
        domain.ssl_status = SSLStatus.PENDING
        return True

    async def record_verification(
        self,
        domain_id: int,
        ssl_status: SSLStatus,
        dns_valid: bool,
        cert_exists: bool,
        reachable: bool,
        expected_ip: Optional[str],
    ) -> bool:
        """Persist a conclusive verification outcome for one domain."""
        if self.db_pool:
            return await database.record_domain_verification(
                self.db_pool, domain_id, ssl_status.value,
                dns_valid, cert_exists, reachable, expected_ip,
            )

        domain = self._domains.get(domain_id)
        if not domain:
            return False
        domain.ssl_status = ssl_status
        domain.ssl_dns_valid = dns_valid
        domain.ssl_cert_exists = cert_exists
        domain.ssl_reachable = reachable
        domain.ssl_enabled = ssl_status == SSLStatus.ACTIVE
        domain.expected_ip = expected_ip
        domain.ssl_last_verified_at = utcnow()
        return True

    async def record_partial_verification(
        self,
        domain_id: int,
        dns_valid: bool,
        reachable: bool,
        expected_ip: Optional[str],
    ) -> bool:
        """
        Persist the DNS and TLS observations of an inconclusive check.

        ssl_status and ssl_cert_exists keep their previous values.
        """
        if self.db_pool:
            return await database.record_partial_domain_verification(
                self.db_pool, domain_id, dns_valid, reachable, expected_ip,
            )

        domain = self._domains.get(domain_id)
        if not domain:
            return False
        domain.ssl_dns_valid = dns_valid
        domain.ssl_reachable = reachable
        domain.expected_ip = expected_ip
        domain.ssl_last_verified_at = utcnow()
        return True

    async def domains_for_reconciliation(self) -> List[Tuple[Domain, Instance]]:
        """All domains with a non-'none' status whose owning instance is running."""
        if self.db_pool:
            pairs = await database.list_domains_for_reconciliation(self.db_pool)
            return [(Domain.from_row(d), Instance.from_row(i)) for d, i in pairs]

        pairs = []
        for domain in sorted(self._domains.values(), key=lambda d: d.id):
            if domain.ssl_status == SSLStatus.NONE:
                continue
            instance = self._instances.get(domain.instance_id)
            if instance and instance.status == InstanceState.RUNNING:
                pairs.append((copy.deepcopy(domain), copy.deepcopy(instance)))
        return pairs
