from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from config.constants import DEFAULT_GATEWAY_FEE_RATE


class PlatformSettings(BaseModel):
    global_commission_rate: float = Field(0.0, ge=0, le=100)
    new_seller_commission_rate: Optional[float] = Field(None, ge=0, le=100)
    commission_grandfather_date: Optional[datetime] = None
    payment_gateway_fee_rate: float = Field(DEFAULT_GATEWAY_FEE_RATE, ge=0, le=100)

    payout_schedule: Literal["weekly", "biweekly", "monthly"] = "biweekly"
    minimum_payout_amount: float = Field(0.0, ge=0)

    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class PlatformSettingsUpdate(BaseModel):
    global_commission_rate: Optional[float] = Field(None, ge=0, le=100)
    new_seller_commission_rate: Optional[float] = Field(None, ge=0, le=100)
    commission_grandfather_date: Optional[datetime] = None
    payment_gateway_fee_rate: Optional[float] = Field(None, ge=0, le=100)
    payout_schedule: Optional[Literal["weekly", "biweekly", "monthly"]] = None
    minimum_payout_amount: Optional[float] = Field(None, ge=0)
