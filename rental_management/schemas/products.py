from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import LocalDateTime


class ProductUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    baseRate: Optional[Decimal] = None
    rateUnit: Optional[str] = None
    rates: Optional[Dict[str, Decimal]] = None
    totalUnits: Optional[int] = None
    maintenanceUnits: Optional[int] = None
    securityDepositPerUnit: Optional[Decimal] = None
    replacementCost: Optional[Decimal] = None
    isActive: Optional[bool] = None


class MaintenanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: int = Field(gt=0)
    notes: Optional[str] = None


class ReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productID: int
    startDate: LocalDateTime
    endDate: LocalDateTime
    quantity: int = Field(gt=0)


class CustomerCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    segment: Optional[str] = "regular"
