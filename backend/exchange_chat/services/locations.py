from typing import Any, Dict, List, Mapping, Optional

from exchange_chat.models.exchange import ExchangeLocation
from exchange_chat.utils.errors import ValidationFailed


SAFE_LOCATIONS: List[ExchangeLocation] = [
    {
        "id": "1",
        "name": "Central Library",
        "address": "123 Main St",
        "is_safe": True,
        "coordinates": {"lat": 12.935423, "lng": 77.61648},
    },
    {
        "id": "2",
        "name": "Community Center",
        "address": "456 Park Ave",
        "is_safe": True,
        "coordinates": {"lat": 12.931423, "lng": 77.62048},
    },
    {
        "id": "3",
        "name": "Town Hall",
        "address": "789 Civic Blvd",
        "is_safe": True,
        "coordinates": {"lat": 12.927423, "lng": 77.61248},
    },
]


def time_slots(first_hour: int = 8, last_hour: int = 20, step_minutes: int = 30) -> List[str]:
    return [f"{hour:02d}:{minute:02d}" for hour in range(first_hour, last_hour + 1) for minute in range(0, 60, step_minutes)]


def get_safe_location(location_id: str) -> Optional[ExchangeLocation]:
    for location in SAFE_LOCATIONS:
        if location["id"] == location_id:
            return dict(location)  # type: ignore[return-value]
    return None


def resolve_location(location: Mapping[str, Any]) -> ExchangeLocation:
    """Normalize a proposed meeting point.

    A point is safe only when it picks a catalog entry, by ``id`` or by a
    ``name`` claimed safe; anything else is a custom point and is stored with
    ``is_safe=False``.
    """
    location_id = location.get("id")
    name = (location.get("name") or "").strip()
    if location_id and location_id != "custom":
        safe = get_safe_location(str(location_id))
        if safe is None:
            raise ValidationFailed(f"Unknown safe location {location_id}")
        return safe
    for safe in SAFE_LOCATIONS:
        if name and location.get("is_safe") and safe["name"].lower() == name.lower():
            return dict(safe)  # type: ignore[return-value]

    if not name:
        raise ValidationFailed("Please select or enter a location")
    coordinates: Optional[Dict[str, float]] = None
    raw = location.get("coordinates")
    if raw:
        try:
            coordinates = {"lat": float(raw["lat"]), "lng": float(raw["lng"])}
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationFailed("Coordinates need numeric lat and lng") from exc
        if not (-90 <= coordinates["lat"] <= 90 and -180 <= coordinates["lng"] <= 180):
            raise ValidationFailed("Coordinates out of range")
    return ExchangeLocation(
        id="custom",
        name=name,
        address=(location.get("address") or "").strip(),
        is_safe=False,
        coordinates=coordinates,  # type: ignore[typeddict-item]
    )
