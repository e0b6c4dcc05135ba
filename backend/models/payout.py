from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class PayoutCalculateRequest(BaseModel):
    period_start: datetime
    period_end: datetime
    period_label: Optional[str] = None


class MarkPaidRequest(BaseModel):
    transaction_id: str = ""


class MarkFailedRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class BankDetailsIn(BaseModel):
    account_holder_name: str = ""
    account_number: str = ""
    ifsc_code: str = ""
    bank_name: str = ""
