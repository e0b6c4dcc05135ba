from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from models.settings import PlatformSettings

# ============================================================
# COMMISSION RESOLVER (PURE)
# ============================================================

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def round_half_up(value) -> int:
    return int(Decimal(str(value)).quantize(_ONE, rounding=ROUND_HALF_UP))


def get_commission_rate(seller: dict, settings: PlatformSettings) -> float:
    """
    Effective commission percentage for a seller.

    Priority: seller override, then grandfathering (sellers created before
    the grandfather date keep the global rate, later sellers get the
    new-seller rate), then the global rate.
    """
    override = (seller or {}).get("commission_rate")
    if override is not None:
        return float(override)

    if (
        settings.commission_grandfather_date is not None
        and settings.new_seller_commission_rate is not None
    ):
        created_at = (seller or {}).get("created_at") or datetime.utcnow()
        if created_at < settings.commission_grandfather_date:
            return float(settings.global_commission_rate)
        return float(settings.new_seller_commission_rate)

    return float(settings.global_commission_rate)


def calculate_order_financials(total_amount, commission_rate, gateway_fee_rate) -> dict:
    """
    Split a charged amount between platform, gateway and seller.

    Each deduction is rounded half-up on its own; whatever rounding leaves
    over stays with the seller.
    """
    total = Decimal(str(total_amount))
    commission_amount = round_half_up(total * Decimal(str(commission_rate)) / _HUNDRED)
    gateway_fee_amount = round_half_up(total * Decimal(str(gateway_fee_rate)) / _HUNDRED)
    seller_net = total - commission_amount - gateway_fee_amount

    return {
        "commission_rate": float(commission_rate),
        "commission_amount": commission_amount,
        "gateway_fee_amount": gateway_fee_amount,
        "seller_net_amount": _to_number(max(Decimal(0), seller_net)),
    }


def build_order_pricing(
    items: list[dict],
    shipping_cost,
    seller: dict,
    settings: PlatformSettings,
) -> dict:
    """
    Frozen financial breakdown for a new order. Computed once at creation so
    later settings changes never rewrite a historical split.
    """
    item_total = sum(Decimal(str(i["price"])) * int(i.get("quantity", 1)) for i in items)
    shipping = Decimal(str(shipping_cost or 0))
    total_amount = item_total + shipping

    financials = calculate_order_financials(
        total_amount,
        get_commission_rate(seller, settings),
        settings.payment_gateway_fee_rate,
    )

    return {
        "item_total": _to_number(item_total),
        "shipping_cost": _to_number(shipping),
        "total_amount": _to_number(total_amount),
        **financials,
    }


def _to_number(value: Decimal):
    return int(value) if value == value.to_integral_value() else float(value)
