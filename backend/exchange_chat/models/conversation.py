from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class LastMessageSnapshot(TypedDict, total=False):
    text: str
    sender_id: str
    timestamp: datetime
    seq: int


class UnreadCounter(TypedDict):
    user_id: str
    count: int


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[str]
    # JSON list of the sorted pair; scope_key appends the item id and is unique
    pair_key: str
    scope_key: str
    # referenced item, snapshot taken when the conversation was opened
    item_id: Optional[str]
    item_type: Optional[str]
    item_title: Optional[str]
    item_image_key: Optional[str]
    last_message: Optional[LastMessageSnapshot]
    last_message_seq: int
    # highest sequence number handed out to a message
    message_seq: int
    # stored counters, one entry per participant
    unread: List[UnreadCounter]
    # read side only: the counters as user_id -> count
    unread_count: Dict[str, int]
    created_at: datetime
    updated_at: datetime
