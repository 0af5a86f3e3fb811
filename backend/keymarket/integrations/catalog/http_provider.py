from __future__ import annotations

import requests

from keymarket.integrations.catalog.base import ShopDirectory
from keymarket.integrations.common import raise_for_status, transport_error


class HttpShopDirectory(ShopDirectory):
    name = "http"

    def __init__(self, base_url: str, *, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def _fetch(self, shop_id: str) -> dict | None:
        try:
            r = requests.get(f"{self.base_url}/shops/{shop_id}", timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise transport_error(exc, dependency="catalog") from exc
        if r.status_code == 404:
            return None
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        raise_for_status(r.status_code, str(j.get("message") or ""), dependency="catalog", body=j)
        shop = j.get("shop") if isinstance(j.get("shop"), dict) else j
        return shop if isinstance(shop, dict) else None

    def get_shop_owner(self, shop_id: str) -> str | None:
        shop = self._fetch(shop_id)
        if not shop:
            return None
        owner = shop.get("owner_id") or shop.get("ownerId")
        return str(owner) if owner else None

    def get_shop_payout_destination(self, shop_id: str) -> str | None:
        shop = self._fetch(shop_id)
        if not shop:
            return None
        destination = shop.get("payout_destination") or shop.get("stripeAccountId")
        return str(destination) if destination else None
