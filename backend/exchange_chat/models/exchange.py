from datetime import datetime
from typing import Literal, Optional, TypedDict


ExchangeType = Literal["pickup", "delivery"]
ExchangeStatus = Literal["pending", "accepted", "rejected", "completed"]


class Coordinates(TypedDict):
    lat: float
    lng: float


class ExchangeLocation(TypedDict, total=False):
    id: str
    name: str
    address: str
    is_safe: bool
    coordinates: Optional[Coordinates]


class ExchangeDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    item_id: Optional[str]
    created_by: str
    exchange_type: ExchangeType
    location: ExchangeLocation
    date_time: datetime
    status: ExchangeStatus
    created_at: datetime
    updated_at: datetime
    # set when the proposal is tied to a business promotion
    business_id: Optional[str]
    item_type: Optional[str]
    # last status whose companion message reached the transcript
    announced_status: Optional[ExchangeStatus]
