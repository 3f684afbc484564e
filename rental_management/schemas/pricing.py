from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import LocalDateTime
from .bookings import BookingItemDto


class PricelistRuleDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    priority: int = 0
    stackable: bool = False
    discountType: Literal["percentage", "fixed"] = "percentage"
    discountValue: Decimal = Field(ge=0)
    customerSegment: Optional[str] = None
    productCategory: Optional[str] = None
    productID: Optional[int] = None
    minQuantity: Optional[int] = None
    minOrderAmount: Optional[Decimal] = None
    validFrom: Optional[LocalDateTime] = None
    validTo: Optional[LocalDateTime] = None
    isActive: bool = True


class PricelistCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: Optional[str] = None
    isDefault: bool = False
    isActive: bool = True
    rules: List[PricelistRuleDto] = []


class QuotePreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerID: Optional[int] = Field(default=None, alias="customerId")
    startDate: LocalDateTime
    endDate: LocalDateTime
    items: List[BookingItemDto] = []
    deliveryRequired: bool = False
    pickupRequired: bool = False
    pricelistID: Optional[int] = Field(default=None, alias="pricelistId")
