from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ShopRecord:
    shop_id: str
    owner_id: str
    payout_destination: str | None = None


class ShopDirectory:
    """Read-only view of shop ownership and payout destinations."""

    name = "unknown"

    def get_shop_owner(self, shop_id: str) -> str | None:
        raise NotImplementedError

    def get_shop_payout_destination(self, shop_id: str) -> str | None:
        raise NotImplementedError
