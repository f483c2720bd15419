from pydantic import BaseModel, Field
import datetime
from decimal import Decimal


class ImpressionCreate(BaseModel):
    """Schema for POST /events/impression. The user agent is read from the request header."""
    experiment_id: int
    variant_id: int
    user_id: str = Field(..., min_length=1)
    date: datetime.date | None = Field(default=None, description="Day to count the impression on; defaults to today (UTC).")
    country: str | None = Field(default=None, min_length=2, max_length=2)


class ImpressionResponse(BaseModel):
    success: bool = True
    is_new_assignment: bool
    device_type: str
    # Variant the user is actually assigned to; differs from the request when another request won the assignment
    variant_id: int


class ConversionCreate(BaseModel):
    """Schema for POST /events/conversion."""
    experiment_id: int
    variant_id: int
    order_value: Decimal = Field(..., ge=0, decimal_places=2)
    user_id: str | None = None
    order_id: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    date: datetime.date | None = None


class ClickCreate(BaseModel):
    """Schema for POST /events/click."""
    experiment_id: int
    variant_id: int
    user_id: str | None = None
    date: datetime.date | None = None


class EventAccepted(BaseModel):
    """Ingestion was queued; the counters are updated by a worker."""
    status: str = "accepted"
    task_id: str | None = None


class NoteAttribute(BaseModel):
    name: str
    value: str | None = None


class OrderCustomer(BaseModel):
    id: int | None = None
    email: str | None = None


class OrderWebhook(BaseModel):
    """Subset of a storefront order payload; experiment identity travels in note_attributes."""
    id: int
    total_price: Decimal
    currency: str = "USD"
    email: str | None = None
    note_attributes: list[NoteAttribute] = Field(default_factory=list)
    customer: OrderCustomer | None = None
