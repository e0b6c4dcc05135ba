from datetime import datetime

from factories import make_order
from utils.commission import build_order_pricing
from utils.settings_cache import get_platform_settings, update_platform_settings


async def test_defaults_are_created_on_first_read(db):
    settings = await get_platform_settings(db)

    assert settings.global_commission_rate == 0
    assert settings.payment_gateway_fee_rate == 3.0
    assert await db.platform_settings.count_documents({}) == 1


async def test_update_is_visible_immediately(db):
    await get_platform_settings(db)
    await update_platform_settings(db, {"global_commission_rate": 15}, admin_id="admin-1")

    settings = await get_platform_settings(db)
    assert settings.global_commission_rate == 15
    assert settings.updated_by == "admin-1"


async def test_rate_change_does_not_touch_existing_orders(db):
    order = make_order()
    await db.orders.insert_one(order)

    await update_platform_settings(db, {"global_commission_rate": 20})
    settings = await get_platform_settings(db)
    pricing = build_order_pricing([{"price": 1000, "quantity": 1}], 0, {"created_at": datetime(2024, 1, 1)}, settings)

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["commission_amount"] == 100
    assert pricing["commission_amount"] == 200
