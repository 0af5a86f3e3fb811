from __future__ import annotations

from keymarket.integrations.catalog.base import ShopDirectory
from keymarket.integrations.catalog.http_provider import HttpShopDirectory
from keymarket.integrations.catalog.static_provider import StaticShopDirectory
from keymarket.integrations.common import IntegrationMisconfiguredError


def build_shop_directory(config) -> ShopDirectory:
    provider = (config.catalog_provider or "static").strip().lower()
    if provider == "static":
        return StaticShopDirectory(config.shop_directory)
    if provider != "http":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:catalog_provider={provider}")
    if not config.catalog_base_url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing CATALOG_BASE_URL")
    return HttpShopDirectory(config.catalog_base_url, timeout_seconds=config.gateway_timeout_seconds)
