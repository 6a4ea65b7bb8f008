from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel, Field as PydanticField, field_validator
from sqlalchemy import Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Make ``value`` timezone-aware UTC; naive values are taken to be UTC."""
    if value is None:
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in, aware UTC datetimes out.

    Stored as UTC wall-clock time so SQLite, which drops offsets, reads back
    the same instant that was written.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return to_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return value.replace(tzinfo=timezone.utc)


DISCOUNT_TYPES = ("PERCENTAGE", "FIXED")

CAMPAIGN_TYPES = (
    "NEWSLETTER_WELCOME",
    "FIRST_ORDER",
    "BLACK_FRIDAY",
    "HOLIDAY",
    "FLASH_SALE",
    "ABANDONED_CART",
    "BIRTHDAY",
    "REFERRAL",
    "CUSTOM",
)


# ---------------------------
# Persisted tables
# ---------------------------

class Coupon(SQLModel, table=True):
    __tablename__ = "coupons"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True, max_length=20)
    description: Optional[str] = Field(default=None, max_length=500)
    discount_type: str = Field(max_length=20)  # "PERCENTAGE" or "FIXED"
    discount_value: float
    min_purchase: Optional[float] = None
    max_discount: Optional[float] = None

    usage_limit: Optional[int] = None
    usage_per_user: Optional[int] = None
    usage_count: int = Field(default=0)

    valid_from: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False),
    )
    valid_to: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    active: bool = Field(default=True)
    campaign_type: Optional[str] = Field(default=None, max_length=50)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False),
    )


class CouponRedemption(SQLModel, table=True):
    __tablename__ = "coupon_redemptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    coupon_id: int = Field(foreign_key="coupons.id", index=True)
    user_id: str = Field(index=True, max_length=255)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False),
    )


class PerformanceMetric(SQLModel, table=True):
    """Append-only request timing record."""

    __tablename__ = "performance_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    endpoint: str = Field(index=True, max_length=255)
    method: str = Field(max_length=10)
    duration: int  # milliseconds
    status: int
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False, index=True),
    )


# ---------------------------
# API payloads
# ---------------------------

class CouponCreate(BaseModel):
    code: str = PydanticField(min_length=3, max_length=20, pattern=r"^[A-Za-z0-9_-]+$")
    description: Optional[str] = None
    discountType: str  # "PERCENTAGE" or "FIXED"
    discountValue: float = PydanticField(ge=0.01)
    minPurchase: Optional[float] = PydanticField(default=None, ge=0)
    maxDiscount: Optional[float] = PydanticField(default=None, ge=0)

    usageLimit: Optional[int] = PydanticField(default=None, ge=1)
    usagePerUser: Optional[int] = PydanticField(default=None, ge=1)

    validFrom: datetime
    validTo: Optional[datetime] = None
    active: bool = True
    campaignType: Optional[str] = None

    @field_validator("discountType")
    @classmethod
    def check_discount_type(cls, value: str) -> str:
        value = value.upper()
        if value not in DISCOUNT_TYPES:
            raise ValueError(f"discountType must be one of {', '.join(DISCOUNT_TYPES)}")
        return value

    @field_validator("campaignType")
    @classmethod
    def check_campaign_type(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in CAMPAIGN_TYPES:
            raise ValueError("unknown campaignType")
        return value

    @field_validator("validFrom", "validTo")
    @classmethod
    def normalize_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value)


class CouponUpdate(CouponCreate):
    """Full replacement of an existing coupon's editable fields."""


class CouponRead(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discountType: str
    discountValue: float
    minPurchase: Optional[float] = None
    maxDiscount: Optional[float] = None
    usageLimit: Optional[int] = None
    usagePerUser: Optional[int] = None
    usageCount: int
    validFrom: datetime
    validTo: Optional[datetime] = None
    active: bool
    campaignType: Optional[str] = None
    redemptionCount: int = 0  # redemptions attributed to a user

    @classmethod
    def from_coupon(cls, coupon: Coupon, redemption_count: int = 0) -> "CouponRead":
        return cls(
            id=coupon.id,
            code=coupon.code,
            description=coupon.description,
            discountType=coupon.discount_type,
            discountValue=coupon.discount_value,
            minPurchase=coupon.min_purchase,
            maxDiscount=coupon.max_discount,
            usageLimit=coupon.usage_limit,
            usagePerUser=coupon.usage_per_user,
            usageCount=coupon.usage_count,
            validFrom=coupon.valid_from,
            validTo=coupon.valid_to,
            active=coupon.active,
            campaignType=coupon.campaign_type,
            redemptionCount=redemption_count,
        )


class ValidateCouponRequest(BaseModel):
    code: str = PydanticField(min_length=1)
    userId: Optional[str] = None
    subtotal: float = PydanticField(ge=0)


class ValidatedCoupon(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discountType: str
    discountValue: float


class ValidateCouponResponse(BaseModel):
    valid: bool
    coupon: ValidatedCoupon
    discount: float
    finalTotal: float


class UseCouponRequest(BaseModel):
    couponId: int
    userId: Optional[str] = None


class CouponUsage(BaseModel):
    code: str
    usageCount: int


class UseCouponResponse(BaseModel):
    success: bool
    coupon: CouponUsage


class EndpointPerformance(BaseModel):
    endpoint: str
    avgDuration: int
    requests: int
    slowRequests: int


class CacheStats(BaseModel):
    size: int
    maxSize: int
    hits: int
    misses: int
    keys: List[str]
