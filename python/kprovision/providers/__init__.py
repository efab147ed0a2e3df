"""
kprovision.providers

Unified aggregator import for:
- ProviderName
- The gateway interface (ProvisioningGateway, ProviderError)
- A dictionary-based factory building a gateway for a provider name
"""

from enum import Enum
from typing import Callable, Dict

from kprovision.models.settings import ProvisionSettings
from kprovision.providers.base import ProviderError, ProvisioningGateway
from kprovision.providers.digitalocean import DigitalOceanGateway


class ProviderName(str, Enum):
    digitalocean = "do"


def _digitalocean_gateway(settings: ProvisionSettings) -> ProvisioningGateway:
    if not settings.api_token:
        raise ValueError("DO_API_TOKEN is required for DigitalOcean.")
    return DigitalOceanGateway(
        settings.api_token, install_dir=settings.ket_install_dir
    )


GATEWAY_MAP: Dict[ProviderName, Callable[[ProvisionSettings], ProvisioningGateway]] = {
    ProviderName.digitalocean: _digitalocean_gateway,
}


def get_gateway(
    provider: ProviderName, settings: ProvisionSettings
) -> ProvisioningGateway:
    if provider not in GATEWAY_MAP:
        raise ValueError(f"Unsupported provider: {provider}")
    return GATEWAY_MAP[provider](settings)


__all__ = [
    "ProviderName",
    "ProviderError",
    "ProvisioningGateway",
    "DigitalOceanGateway",
    "get_gateway",
]
