from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

# Decimal on the Python side, plain JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class Location(CamelModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    place_id: Optional[str] = None
    formatted_address: Optional[str] = None


class Country(CamelModel):
    name: Optional[str] = None
    code: Optional[str] = None


class UserDetails(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    landmark: Optional[str] = None
    location: Optional[Location] = None
    country: Optional[Country] = None
    state: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class LineItemIn(CamelModel):
    product: str
    quantity: int = Field(ge=1)
    size: str
    color: str


class CheckoutCreate(CamelModel):
    # Empty means "use the cart"
    products: list[LineItemIn] = []
    # Either {addressId} or the inline address fields; checked by CheckoutValidator
    user_details: dict[str, Any]
    payment_type: str


class LineItemRead(CamelModel):
    product: str
    quantity: int
    size: str
    color: str
    price: Money
    product_name: Optional[str] = None
    product_snapshot: Optional[dict] = None


class StatusEventRead(CamelModel):
    status: str
    changed_at: datetime
    note: Optional[str] = None


class DeliveryAgent(CamelModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    agent_id: Optional[str] = None


class CheckoutRead(CamelModel):
    id: int
    order_number: str
    user: Optional[str] = None
    products: list[LineItemRead]
    total_amount: Money
    user_details: UserDetails
    payment_type: str
    payment_status: str
    payment_reference: Optional[str] = None
    payment_details: Optional[dict] = None
    delivery_status: str
    delivery_status_timeline: list[StatusEventRead]
    estimated_delivery_date: datetime
    actual_delivery_date: Optional[datetime] = None
    cancellation_deadline: datetime
    delivery_agent: Optional[DeliveryAgent] = None
    created_at: datetime
    updated_at: datetime


class CheckoutCreated(CamelModel):
    order: CheckoutRead
    payment_url: Optional[str] = None


class CheckoutStatusRead(CamelModel):
    id: int
    order_number: str
    payment_status: str
    delivery_status: str
    estimated_delivery_date: datetime


class PaymentStatusUpdate(CamelModel):
    payment_status: str


class DeliveryStatusUpdate(CamelModel):
    delivery_status: str
    note: Optional[str] = None


class AgentAssignment(DeliveryAgent):
    delivery_status: str = "out_for_delivery"


class DeliveryPaymentIn(CamelModel):
    actual_method: str
    received_by: str = ""
    notes: str = ""
    pos_terminal: Optional[str] = None
    transfer_reference: Optional[str] = None
    agent: Optional[DeliveryAgent] = None


class DeliveryPaymentConfirmation(CamelModel):
    notes: Optional[str] = None


class CheckoutSearch(CamelModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    payment_status: Optional[str] = None
    payment_reference: Optional[str] = None
    delivery_status: Optional[str] = None
    order_number: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class LocationStat(CamelModel):
    country: str
    city: str
    total_orders: int
    total_amount: float
    paid_orders: int
    pending_orders: int


class WebhookAck(CamelModel):
    message: str
    order_number: str
    payment_status: str


class NotificationRead(CamelModel):
    id: int
    type: str
    message: str
    data: Optional[dict] = None
    read: bool
    created_at: datetime
