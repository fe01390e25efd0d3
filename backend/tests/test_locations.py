import pytest

from exchange_chat.services.locations import SAFE_LOCATIONS, resolve_location, time_slots
from exchange_chat.utils.errors import ValidationFailed


class TestResolveLocation:

    def test_catalog_entry_by_id(self):
        location = resolve_location({"id": "2"})
        assert location["name"] == "Community Center"
        assert location["is_safe"] is True
        assert location["coordinates"] == {"lat": 12.931423, "lng": 77.62048}

    def test_catalog_entry_by_name(self):
        location = resolve_location({"name": "Central Library", "is_safe": True})
        assert location["id"] == "1"
        assert location["address"] == "123 Main St"

    def test_unknown_catalog_id(self):
        with pytest.raises(ValidationFailed):
            resolve_location({"id": "99"})

    def test_custom_point_is_never_safe(self):
        location = resolve_location({"name": "My porch", "is_safe": True, "coordinates": {"lat": 1.5, "lng": 2.5}})
        assert location["id"] == "custom"
        assert location["is_safe"] is False
        assert location["coordinates"] == {"lat": 1.5, "lng": 2.5}

    def test_catalog_name_not_claimed_safe_stays_custom(self):
        location = resolve_location({"name": "Town Hall"})
        assert location["is_safe"] is False

    def test_custom_point_needs_a_name(self):
        with pytest.raises(ValidationFailed):
            resolve_location({"name": "   "})

    def test_custom_coordinates_are_checked(self):
        with pytest.raises(ValidationFailed):
            resolve_location({"name": "Nowhere", "coordinates": {"lat": 200, "lng": 0}})

    def test_catalog_is_not_mutated(self):
        location = resolve_location({"id": "1"})
        location["name"] = "changed"
        assert SAFE_LOCATIONS[0]["name"] == "Central Library"


def test_time_slots_cover_the_day_in_half_hours():
    slots = time_slots()
    assert slots[0] == "08:00"
    assert slots[-1] == "20:30"
    assert len(slots) == 26
