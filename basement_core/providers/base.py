"""
Basement Cloud Provider Base Classes and Interfaces
===================================================

Defines the request/response interface around the cloud provider's
instance-lifecycle API: create, fetch by id, delete, list by tag.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Collection, List, Optional, Dict, Any
from datetime import datetime


SYSTEM_TAG = "basement-server"


def customer_tag(customer_id: str) -> str:
    """Per-customer provider tag binding a machine to its owner."""
    return f"basement-customer-{customer_id}"


def instance_name_prefix(customer_id: str) -> str:
    return f"basement-{customer_id}-"


def owned_by(machine: "CloudInstance", customer_id: str) -> bool:
    """
    Whether a machine belongs to a customer, judged by tag or name.

    Names are `basement-<customer_id>-<unix ts>`; the timestamp holds no
    dash, so the whole name must match for ids that themselves contain one.
    """
    if customer_tag(customer_id) in machine.tags:
        return True
    return re.fullmatch(re.escape(instance_name_prefix(customer_id)) + r"\d+", machine.name) is not None


class CloudStatus(Enum):
    """Machine states reported by the provider."""
    NEW = "new"
    ACTIVE = "active"
    OFF = "off"
    ARCHIVE = "archive"
    UNKNOWN = "unknown"


@dataclass
class CloudInstance:
    """Instance descriptor returned by the provider."""
    id: str
    name: str
    status: CloudStatus
    ip_address: Optional[str] = None
    ipv6_address: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    region: Optional[str] = None
    size: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        """Active with an IPv4 address assigned."""
        return self.status == CloudStatus.ACTIVE and bool(self.ip_address)

    def __str__(self) -> str:
        return f"{self.name} ({self.id}): {self.ip_address} [{self.status.value}]"


@dataclass
class ProvisionConfig:
    """Configuration for creating a new machine."""
    name: str
    size: str
    region: str = "nyc3"
    image: str = "ubuntu-22-04-x64"
    user_data: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    customer_id: Optional[str] = None
    monitoring: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if SYSTEM_TAG not in self.tags:
            self.tags.insert(0, SYSTEM_TAG)
        if self.customer_id and customer_tag(self.customer_id) not in self.tags:
            self.tags.append(customer_tag(self.customer_id))


class ProviderError(Exception):
    """Base exception for provider errors."""
    def __init__(self, provider: str, message: str, details: Optional[Dict] = None):
        self.provider = provider
        self.message = message
        self.details = details or {}
        super().__init__(f"[{provider}] {message}")


class ProviderAuthError(ProviderError):
    """Authentication/authorization error."""
    pass


class ProviderQuotaError(ProviderError):
    """Quota/limit exceeded error."""
    pass


class ProviderResourceError(ProviderError):
    """Resource not found or unavailable error."""
    pass


class CloudInstanceClient(ABC):
    """
    Abstract interface for the cloud provider's instance API.

    Implementations are synchronous; async callers run them in a worker
    thread so a slow provider never blocks the event loop.
    """

    PROVIDER_ID: str = "base"
    PROVIDER_NAME: str = "Base Provider"

    @abstractmethod
    def create(self, config: ProvisionConfig) -> CloudInstance:
        """
        Create a new machine.

        Raises:
            ProviderError: If creation fails
        """
        pass

    @abstractmethod
    def get(self, instance_id: str) -> Optional[CloudInstance]:
        """
        Fetch a machine by provider id.

        Returns:
            CloudInstance or None if it does not exist
        """
        pass

    @abstractmethod
    def delete(self, instance_id: str) -> bool:
        """
        Delete a machine.

        Raises:
            ProviderResourceError: machine does not exist
            ProviderError: any other failure
        """
        pass

    @abstractmethod
    def list_by_tag(self, tag: str) -> List[CloudInstance]:
        """List all machines carrying a tag."""
        pass

    def find_for_customer(
        self,
        customer_id: str,
        system_tag: str = SYSTEM_TAG,
        exclude: Collection[str] = (),
    ) -> Optional[CloudInstance]:
        """
        Locate a customer's machine without its provider id.

        Degraded recovery path: used only when the provider id was never
        persisted. Matches the per-customer tag first, then the exact name
        pattern. Machines in `exclude` (already linked to another record)
        are never returned.
        """
        machines = [m for m in self.list_by_tag(system_tag) if m.id not in exclude]
        tag = customer_tag(customer_id)

        for machine in machines:
            if tag in machine.tags:
                return machine
        for machine in machines:
            if owned_by(machine, customer_id):
                return machine
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.PROVIDER_ID})>"
