from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class OpenConversation(BaseModel):

    other_user_id: str = Field(min_length=1)
    item_id: Optional[str] = None
    item_type: Literal["post", "event", "promotion", "resource", "business"] = "post"
    item_title: Optional[str] = None
    item_image_key: Optional[str] = None


class SendMessage(BaseModel):

    text: str = ""
    media_urls: List[str] = Field(default_factory=list)


class CoordinatesIn(BaseModel):

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class LocationIn(BaseModel):

    # a catalog id ("1", "2", ...) or "custom"
    id: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    is_safe: bool = False
    coordinates: Optional[CoordinatesIn] = None


class ProposeExchange(BaseModel):

    exchange_type: Literal["pickup", "delivery"]
    location: LocationIn
    date_time: datetime
    item_id: Optional[str] = None
    business_id: Optional[str] = None
    item_type: Optional[str] = None


class RespondExchange(BaseModel):

    decision: Literal["accept", "reject"]


class PromotionRef(BaseModel):

    business_id: str
    item_id: str
    item_type: str = "promotion"
