from __future__ import annotations

from keymarket.integrations.catalog.base import ShopDirectory, ShopRecord


class StaticShopDirectory(ShopDirectory):
    name = "static"

    def __init__(self, shops: dict | None = None):
        self._shops: dict[str, ShopRecord] = {}
        for shop_id, row in (shops or {}).items():
            self.add_shop(
                str(shop_id),
                owner_id=str(row.get("owner") or row.get("owner_id") or ""),
                payout_destination=row.get("destination") or row.get("payout_destination"),
            )

    def add_shop(self, shop_id: str, *, owner_id: str, payout_destination: str | None = None) -> ShopRecord:
        record = ShopRecord(shop_id=str(shop_id), owner_id=str(owner_id), payout_destination=payout_destination or None)
        self._shops[record.shop_id] = record
        return record

    def get_shop_owner(self, shop_id: str) -> str | None:
        record = self._shops.get(str(shop_id))
        return record.owner_id if record and record.owner_id else None

    def get_shop_payout_destination(self, shop_id: str) -> str | None:
        record = self._shops.get(str(shop_id))
        return record.payout_destination if record else None
