"""
Basement Cloud Provider Layer
=============================

Request/response wrapper around the cloud provider's instance API.

Supported Providers:
- DigitalOcean (REST v2 via httpx)
"""

from .base import (
    CloudInstanceClient,
    CloudInstance,
    CloudStatus,
    ProvisionConfig,
    ProviderError,
    ProviderAuthError,
    ProviderQuotaError,
    ProviderResourceError,
    SYSTEM_TAG,
    customer_tag,
    instance_name_prefix,
    owned_by,
)
from .digitalocean import DigitalOceanClient

__all__ = [
    "CloudInstanceClient",
    "CloudInstance",
    "CloudStatus",
    "ProvisionConfig",
    "ProviderError",
    "ProviderAuthError",
    "ProviderQuotaError",
    "ProviderResourceError",
    "SYSTEM_TAG",
    "customer_tag",
    "instance_name_prefix",
    "owned_by",
    "DigitalOceanClient",
]
