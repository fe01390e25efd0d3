from typing import Literal, Optional, TypedDict


ItemType = Literal["post", "event", "promotion", "resource", "business"]


class ItemPreview(TypedDict):
    id: str
    item_type: str
    title: Optional[str]
    primary_image_key: Optional[str]
    # False when the referenced item has been deleted or could not be read
    available: bool
