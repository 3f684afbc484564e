from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import LocalDateTime


class ChargeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal = Field(gt=0)
    dueDate: LocalDateTime
    label: Optional[str] = "charge"


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal = Field(gt=0)
    method: str = "cash"
    timestamp: Optional[LocalDateTime] = None
    advanceCredit: bool = False
    transactionId: Optional[str] = None
    status: str = "captured"


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal = Field(gt=0)
    method: str = "cash"
    transactionId: Optional[str] = None
    status: str = "succeeded"
