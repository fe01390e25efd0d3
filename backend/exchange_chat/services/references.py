import re
from typing import Any, Mapping, Optional


EXCHANGE_MARKER = "Exchange ID:"
_EXCHANGE_ID_RE = re.compile(re.escape(EXCHANGE_MARKER) + r" ([a-zA-Z0-9]+)")


def extract_proposal_reference(message_text: Optional[str]) -> Optional[str]:
    """Return the exchange id embedded as ``"Exchange ID: <id>"`` in ``message_text``.

    Only the first marker is considered.
    """
    if not message_text:
        return None
    match = _EXCHANGE_ID_RE.search(message_text)
    return match.group(1) if match else None


def message_reference(message: Mapping[str, Any]) -> Optional[str]:
    """Exchange id a transcript message should render as a card, if any.

    Messages written by this service carry a ``kind``; ordinary text never
    resolves to a card, even when a user types the marker. Documents without
    a ``kind`` predate the structured field and fall back to text scanning.
    """
    kind = message.get("kind")
    if kind == "exchange_reference":
        return message.get("exchange_id")
    if kind is not None:
        return None
    return extract_proposal_reference(message.get("text"))
