"""
Basement DigitalOcean Provider Adapter
======================================

DigitalOcean droplet lifecycle using direct REST API calls via httpx.

API Docs: https://docs.digitalocean.com/reference/api/api-reference/#tag/Droplets
"""

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any

import httpx

from .base import (
    CloudInstanceClient,
    CloudInstance,
    CloudStatus,
    ProvisionConfig,
    ProviderError,
    ProviderAuthError,
    ProviderQuotaError,
    ProviderResourceError,
)

logger = logging.getLogger(__name__)


# Mapping of DigitalOcean droplet statuses
DO_STATUS_MAP = {
    "new": CloudStatus.NEW,
    "active": CloudStatus.ACTIVE,
    "off": CloudStatus.OFF,
    "archive": CloudStatus.ARCHIVE,
}


class DigitalOceanClient(CloudInstanceClient):
    """
    DigitalOcean droplet client.

    Usage:
        client = DigitalOceanClient(api_token="...")
        droplet = client.create(ProvisionConfig(name="basement-42-1700000000", size="s-1vcpu-1gb"))
        droplet = client.get(droplet.id)
    """

    PROVIDER_ID = "digitalocean"
    PROVIDER_NAME = "DigitalOcean"

    API_BASE_URL = "https://api.digitalocean.com/v2"
    PAGE_SIZE = 200

    def __init__(
        self,
        api_token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        validate_credentials: bool = True,
    ):
        """
        Initialize DigitalOcean client.

        Args:
            api_token: DigitalOcean personal access token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
            validate_credentials: Hit /account once to fail fast on a bad token
        """
        if not api_token:
            raise ProviderAuthError(self.PROVIDER_ID, "API token is required")

        self.api_token = api_token
        self.client = httpx.Client(
            base_url=self.API_BASE_URL,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        if validate_credentials:
            self._validate_credentials()

    def _validate_credentials(self) -> None:
        """Validate the API token."""
        self._make_request("GET", "/account")

    def close(self) -> None:
        self.client.close()

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated API request."""
        try:
            response = self.client.request(
                method=method,
                url=endpoint,
                json=data,
                params=params,
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.PROVIDER_ID, f"Request failed: {e}")

        if response.status_code == 401:
            raise ProviderAuthError(self.PROVIDER_ID, "Authentication failed")

        if response.status_code == 404:
            raise ProviderResourceError(self.PROVIDER_ID, f"Resource not found: {endpoint}")

        if response.is_error:
            message = f"HTTP {response.status_code}"
            try:
                message = response.json().get("message", message)
            except ValueError:
                pass

            if response.status_code == 429 or "limit" in message.lower():
                raise ProviderQuotaError(self.PROVIDER_ID, message, {"status": response.status_code})
            raise ProviderError(self.PROVIDER_ID, f"API error: {message}", {"status": response.status_code})

        if response.content:
            return response.json()
        return {}

    def _convert_droplet(self, droplet: Dict[str, Any]) -> CloudInstance:
        """Convert a droplet payload into a CloudInstance."""
        networks = droplet.get("networks") or {}

        ip_address = None
        for net in networks.get("v4") or []:
            if net.get("type", "public") == "public" and net.get("ip_address"):
                ip_address = net["ip_address"]
                break

        ipv6_address = None
        for net in networks.get("v6") or []:
            if net.get("ip_address"):
                ipv6_address = net["ip_address"]
                break

        created_at = None
        if droplet.get("created_at"):
            try:
                created_at = datetime.fromisoformat(droplet["created_at"].replace("Z", "+00:00"))
            except ValueError:
                pass

        return CloudInstance(
            id=str(droplet["id"]),
            name=droplet.get("name", ""),
            status=DO_STATUS_MAP.get(droplet.get("status", ""), CloudStatus.UNKNOWN),
            ip_address=ip_address,
            ipv6_address=ipv6_address,
            tags=list(droplet.get("tags") or []),
            region=(droplet.get("region") or {}).get("slug"),
            size=droplet.get("size_slug"),
            created_at=created_at,
        )

    # =========================================
    # INSTANCE LIFECYCLE
    # =========================================

    def create(self, config: ProvisionConfig) -> CloudInstance:
        """Create a droplet."""
        payload = {
            "name": config.name,
            "region": config.region,
            "size": config.size,
            "image": config.image,
            "backups": False,
            "ipv6": False,
            "monitoring": config.monitoring,
            "tags": config.tags,
        }
        if config.user_data:
            payload["user_data"] = config.user_data

        response = self._make_request("POST", "/droplets", data=payload)
        droplet = response.get("droplet")
        if not droplet:
            raise ProviderError(self.PROVIDER_ID, "Create response did not include a droplet", response)

        instance = self._convert_droplet(droplet)
        logger.info(f"Droplet created: {instance}")
        return instance

    def get(self, instance_id: str) -> Optional[CloudInstance]:
        """Fetch a droplet; None if it no longer exists."""
        try:
            response = self._make_request("GET", f"/droplets/{instance_id}")
        except ProviderResourceError:
            return None
        return self._convert_droplet(response["droplet"])

    def delete(self, instance_id: str) -> bool:
        """Delete a droplet."""
        self._make_request("DELETE", f"/droplets/{instance_id}")
        logger.info(f"Droplet {instance_id} deleted")
        return True

    def list_by_tag(self, tag: str) -> List[CloudInstance]:
        """List droplets carrying a tag, following pagination."""
        instances = []
        page = 1
        while True:
            response = self._make_request(
                "GET",
                "/droplets",
                params={"tag_name": tag, "page": page, "per_page": self.PAGE_SIZE},
            )
            instances.extend(self._convert_droplet(d) for d in response.get("droplets", []))

            next_page = ((response.get("links") or {}).get("pages") or {}).get("next")
            if not next_page:
                break
            page += 1

        return instances
