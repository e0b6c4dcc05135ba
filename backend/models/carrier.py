from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ScanEvent(BaseModel):
    status: str = ""
    description: str = ""
    location: str = ""
    timestamp: Optional[datetime] = None
    raw_date: str = ""

    @property
    def identity_key(self) -> str:
        # unparsed dates still tell scans apart
        ts = self.timestamp.isoformat() if self.timestamp else self.raw_date
        return f"{ts}|{self.description}"


class CarrierEvent(BaseModel):
    """
    Typed tracking event extracted from a carrier webhook payload.
    Nothing past the webhook boundary reads the raw payload.
    """

    awb: str = ""
    carrier_order_id: str = ""
    status_code: Optional[int] = None
    status_label: str = ""
    courier_name: str = ""
    estimated_delivery: Optional[datetime] = None
    event_time: Optional[datetime] = None
    scans: list[ScanEvent] = Field(default_factory=list)

    @property
    def has_identifier(self) -> bool:
        return bool(self.awb or self.carrier_order_id)
