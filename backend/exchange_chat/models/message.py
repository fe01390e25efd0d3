from datetime import datetime
from typing import List, Literal, Optional, TypedDict


MessageKind = Literal["plain", "exchange_reference"]


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    text: str
    media_urls: List[str]
    read: bool
    created_at: datetime
    # server-assigned, strictly increasing within a conversation
    seq: int
    kind: MessageKind
    exchange_id: Optional[str]
