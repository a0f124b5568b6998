from __future__ import annotations

import math
from types import MappingProxyType

from app.schemas.api import DistanceSegment, TravelSegmentOut, segment_key


TRANSPORT_ICONS = MappingProxyType(
    {
        "car": "🚗",
        "moto": "🏍️",
        "walk": "🚶",
        "bike": "🚴",
        "bus": "🚌",
        "taxi": "🚕",
    }
)

# Itinerary transport methods that map onto a routable travel profile.
TRANSPORT_METHOD_PROFILES = MappingProxyType(
    {
        "walking": "walk",
        "walk": "walk",
        "driving": "car",
        "car": "car",
        "taxi": "car",
        "motorcycling": "moto",
        "moto": "moto",
        "truck": "truck",
    }
)


def format_distance(meters: float) -> str:
    if meters >= 1000:
        return f"{meters / 1000:.1f} km"
    # Halves round up, not to even.
    return f"{math.floor(meters + 0.5)} m"


def format_duration(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def profile_for_transport_method(method: str | None, default: str = "car") -> str:
    if not method:
        return default
    return TRANSPORT_METHOD_PROFILES.get(str(method).strip().lower(), default)


def transport_icon(method: str | None) -> str:
    key = str(method or "").strip().lower()
    if key in TRANSPORT_ICONS:
        return TRANSPORT_ICONS[key]
    return TRANSPORT_ICONS.get(TRANSPORT_METHOD_PROFILES.get(key, ""), TRANSPORT_ICONS["car"])


def describe_segment(
    from_item_id: str,
    to_item_id: str,
    segment: DistanceSegment,
    *,
    transport_method: str | None = None,
) -> TravelSegmentOut:
    return TravelSegmentOut(
        key=segment_key(from_item_id, to_item_id),
        from_item_id=from_item_id,
        to_item_id=to_item_id,
        distance=segment.distance,
        duration=segment.duration,
        distance_text=format_distance(segment.distance),
        duration_text=format_duration(segment.duration),
        icon=transport_icon(transport_method),
    )
