from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import LocalDateTime


class BookingItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productID: int = Field(alias="productId")
    quantity: int = Field(default=1, gt=0)
    rateUnit: Optional[str] = None
    duration: Optional[Decimal] = Field(default=None, gt=0)
    durationUnit: Optional[str] = None


class CreateBookingDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerID: int = Field(alias="customerId")
    startDate: LocalDateTime
    endDate: LocalDateTime
    items: List[BookingItemDto] = []
    deliveryRequired: bool = False
    pickupRequired: bool = False
    pricelistID: Optional[int] = Field(default=None, alias="pricelistId")
    notes: Optional[str] = None
    deliveryAddress: Optional[str] = None


class VersionedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    expectedVersion: Optional[int] = None


class UpdateItemsRequest(VersionedRequest):
    items: List[BookingItemDto] = []


class CancelRequest(VersionedRequest):
    reason: Optional[str] = None


class ExtensionRequest(VersionedRequest):
    newEndDate: LocalDateTime


class ReturnItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bookingItemID: Optional[int] = None
    productID: Optional[int] = None
    quantity: Optional[int] = Field(default=None, gt=0)
    condition: Literal["excellent", "good", "fair", "damaged", "missing", "lost"] = "good"
    assessedCost: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnedAt: Optional[LocalDateTime] = None
    items: List[ReturnItemDto] = []
    disputed: bool = False
    notes: Optional[str] = None


class ResolveReturnCaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    resolution: str
    additionalCharge: Optional[Decimal] = Field(default=None, ge=0)
    creditAmount: Optional[Decimal] = Field(default=None, ge=0)


class DeliveryStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["scheduled", "in_transit", "delivered", "failed", "cancelled"]
    scheduledAt: Optional[LocalDateTime] = None
    vehicleNumber: Optional[str] = None
    notes: Optional[str] = None
