from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from keymarket.errors import ValidationError


def _clamp_minor(value) -> int:
    try:
        parsed = int(value or 0)
    except Exception:
        parsed = 0
    return parsed if parsed > 0 else 0


def bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def split_total_minor(total_minor: int, fee_bps: int) -> tuple[int, int]:
    """Return (platform_fee_minor, seller_minor); the two always sum to total."""
    total = _clamp_minor(total_minor)
    fee = min(total, bps_minor_half_up(total, fee_bps))
    return int(fee), int(total - fee)


def split_after_partial_refund(
    *,
    total_minor: int,
    fee_minor: int,
    refund_minor: int,
    fee_bps: int,
    policy: str,
) -> tuple[int, int, int]:
    """Re-split an order after part of the charge went back to the buyer.

    Returns (retained_total_minor, platform_fee_minor, seller_minor).
    ``proportional`` charges the fee on what the platform keeps;
    ``fixed`` keeps the original fee and takes the refund out of the seller share.
    """
    total = _clamp_minor(total_minor)
    refund = int(refund_minor or 0)
    if refund <= 0 or refund >= total:
        raise ValidationError(
            "Partial refund must be greater than zero and less than the order total",
            details={"total_amount_minor": total, "refund_amount_minor": refund},
        )
    retained = total - refund
    if (policy or "proportional") == "fixed":
        fee = min(_clamp_minor(fee_minor), retained)
    else:
        fee = min(retained, bps_minor_half_up(retained, fee_bps))
    return int(retained), int(fee), int(retained - fee)
