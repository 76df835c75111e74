"""
Basement Data Model
===================

Instance and Domain records as persisted in the relational store.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class InstanceState(str, Enum):
    """Lifecycle of a customer's instance record."""
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    DELETED = "deleted"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceState.FAILED, InstanceState.DELETED)


class SSLStatus(str, Enum):
    """Canonical certificate status of a domain."""
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    ORPHANED = "orphaned"
    EXPIRED = "expired"
    UNREACHABLE = "unreachable"


HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_hostname(hostname: str) -> str:
    """
    Lowercase and validate a customer hostname.

    Raises:
        ValueError: not a fully qualified DNS name
    """
    hostname = hostname.strip().lower().rstrip(".")
    if not HOSTNAME_RE.match(hostname):
        raise ValueError(f"Invalid hostname: {hostname!r}")
    return hostname


# Plan → droplet size and the spec snapshot stored on the instance row
PLAN_SPECS: Dict[str, Dict[str, str]] = {
    "basic": {"ram": "1 GB", "cpu": "1 CPU", "storage": "25 GB SSD", "bandwidth": "1 TB", "slug": "s-1vcpu-1gb"},
    "priority": {"ram": "2 GB", "cpu": "2 CPUs", "storage": "50 GB SSD", "bandwidth": "2 TB", "slug": "s-2vcpu-2gb"},
    "premium": {"ram": "4 GB", "cpu": "2 CPUs", "storage": "80 GB SSD", "bandwidth": "4 TB", "slug": "s-2vcpu-4gb"},
}


@dataclass
class Instance:
    """One customer's provisioned virtual machine."""
    id: int
    customer_id: str
    plan: str
    status: InstanceState = InstanceState.PROVISIONING
    provider_instance_id: Optional[str] = None
    ip_address: Optional[str] = None
    login_username: str = "root"
    login_secret: str = ""
    specs: Dict[str, Any] = field(default_factory=dict)
    charge_reference: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row) -> "Instance":
        specs = row["specs"]
        if isinstance(specs, str):
            specs = json.loads(specs)
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            plan=row["plan"],
            status=InstanceState(row["status"]),
            provider_instance_id=row["provider_instance_id"],
            ip_address=row["ip_address"],
            login_username=row["login_username"],
            login_secret=row["login_secret"],
            specs=specs or {},
            charge_reference=row["charge_reference"],
            created_at=row["created_at"],
        )

    def __str__(self) -> str:
        return f"instance {self.id} ({self.customer_id}): {self.ip_address or 'no ip'} [{self.status.value}]"


@dataclass
class Domain:
    """A hostname bound to an instance, with its certificate state."""
    id: int
    instance_id: int
    hostname: str
    ssl_status: SSLStatus = SSLStatus.NONE
    ssl_dns_valid: bool = False
    ssl_cert_exists: bool = False
    ssl_reachable: bool = False
    ssl_enabled: bool = False
    ssl_last_verified_at: Optional[datetime] = None
    expected_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row) -> "Domain":
        return cls(
            id=row["id"],
            instance_id=row["instance_id"],
            hostname=row["hostname"],
            ssl_status=SSLStatus(row["ssl_status"]),
            ssl_dns_valid=row["ssl_dns_valid"],
            ssl_cert_exists=row["ssl_cert_exists"],
            ssl_reachable=row["ssl_reachable"],
            ssl_enabled=row["ssl_enabled"],
            ssl_last_verified_at=row["ssl_last_verified_at"],
            expected_ip=row["expected_ip"],
            created_at=row["created_at"],
        )
