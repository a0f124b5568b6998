from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel, Field, model_validator


TravelProfile = Literal["car", "moto", "walk", "truck"]
TransportMethod = Literal["car", "moto", "walk", "bike", "bus", "taxi"]


def is_valid_coordinate(latitude: float | None, longitude: float | None) -> bool:
    if latitude is None or longitude is None:
        return False
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        return False
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if not math.isfinite(lat) or not math.isfinite(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


class GeoPoint(BaseModel):
    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)


class PlaceRef(BaseModel):
    place_id: str | None = None
    place_name: str | None = None
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class ItineraryItem(BaseModel):
    item_id: str
    place: PlaceRef | None = None
    activity_title: str | None = None
    estimated_duration: int | None = Field(default=None, ge=0)
    transport_method: str | None = None

    @property
    def geo_point(self) -> GeoPoint | None:
        if self.place is None or not is_valid_coordinate(self.place.latitude, self.place.longitude):
            return None
        return GeoPoint(latitude=float(self.place.latitude), longitude=float(self.place.longitude))


class VenueOption(BaseModel):
    option_id: str
    place_id: str | None = None
    place_name: str | None = None
    place_address: str | None = None
    place_latitude: float | None = None
    place_longitude: float | None = None
    external_provider: str | None = None
    external_place_id: str | None = None
    external_place_name: str | None = None
    external_address: str | None = None
    external_latitude: float | None = None
    external_longitude: float | None = None

    @property
    def geo_point(self) -> GeoPoint | None:
        # Internal coordinates win when both pairs are present.
        if self.place_id and is_valid_coordinate(self.place_latitude, self.place_longitude):
            return GeoPoint(latitude=float(self.place_latitude), longitude=float(self.place_longitude))
        if is_valid_coordinate(self.external_latitude, self.external_longitude):
            return GeoPoint(latitude=float(self.external_latitude), longitude=float(self.external_longitude))
        return None


class PlaceWithDistance(VenueOption):
    distance: float | None = None
    duration: float | None = None
    distance_text: str | None = None
    duration_text: str | None = None


class DistanceSegment(BaseModel):
    distance: float
    duration: float


DistanceMap = dict[str, DistanceSegment]


def segment_key(from_item_id: str, to_item_id: str) -> str:
    return f"{from_item_id}-{to_item_id}"


class RouteStep(BaseModel):
    type: Literal["start", "job", "end"]
    location: tuple[float, float]
    item_id: str | None = None
    arrival: float | None = None
    duration: float | None = None
    distance: float | None = None


class OptimizedRoute(BaseModel):
    vehicle_id: str
    steps: list[RouteStep] = Field(default_factory=list)


class OptimizedRouteResult(BaseModel):
    optimized_items: list[ItineraryItem]
    total_distance: float
    total_duration: float
    savings_percent: float | None = None
    original_distance: float | None = None
    original_duration: float | None = None
    route: OptimizedRoute | None = None


class ReorderedStop(BaseModel):
    item: ItineraryItem
    position: int
    original_position: int | None
    moved: bool


class RouteComparison(BaseModel):
    stops: list[ReorderedStop]
    moved_count: int
    total_distance: float
    total_duration: float
    savings_percent: float | None = None
    is_permutation: bool


class TravelSegmentOut(BaseModel):
    key: str
    from_item_id: str
    to_item_id: str
    distance: float
    duration: float
    distance_text: str
    duration_text: str
    icon: str


class ItineraryDistancesRequest(BaseModel):
    items: list[ItineraryItem]
    profile: TravelProfile | None = None


class ItineraryDistancesResponse(BaseModel):
    distances: dict[str, DistanceSegment]
    total_distance: float
    total_duration: float
    total_distance_text: str
    total_duration_text: str
    segments: list[TravelSegmentOut]


class PlaceDistancesRequest(BaseModel):
    reference: GeoPoint | None = None
    places: list[VenueOption]
    profile: TravelProfile | None = None
    sort_by_distance: bool = True


class PlaceDistancesResponse(BaseModel):
    places: list[PlaceWithDistance]
    error: str | None = None


class OptimizeRouteRequest(BaseModel):
    items: list[ItineraryItem] = Field(min_length=1)
    start_location: GeoPoint | None = None
    profile: TravelProfile | None = None


class MultiVehicleOptimizeRequest(OptimizeRouteRequest):
    vehicle_count: int = Field(default=2, ge=1, le=20)
    vehicle_capacity: int = Field(default=4, ge=1)


class OptimizeRouteResponse(BaseModel):
    result: OptimizedRouteResult
    comparison: RouteComparison


class CompareRouteRequest(BaseModel):
    original_items: list[ItineraryItem]
    result: OptimizedRouteResult

    @model_validator(mode="after")
    def ensure_unique_ids(self) -> "CompareRouteRequest":
        ids = [item.item_id for item in self.original_items]
        if len(ids) != len(set(ids)):
            raise ValueError("original_items must have unique item_id values")
        return self
