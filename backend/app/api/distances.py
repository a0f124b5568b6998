from __future__ import annotations

from fastapi import APIRouter

from app.providers.trackasia import TrackAsiaError
from app.schemas.api import (
    ItineraryDistancesRequest,
    ItineraryDistancesResponse,
    PlaceDistancesRequest,
    PlaceDistancesResponse,
    segment_key,
)
from app.services.formatting import describe_segment, format_distance, format_duration, profile_for_transport_method
from app.services.itinerary_distances import compute_itinerary_distances, valid_stops
from app.services.place_distances import PlaceDistanceEnricher
from app.utils.errors import AppError
from app.utils.settings import get_settings

router = APIRouter(prefix="/api/v1", tags=["distances"])


def upstream_error(exc: TrackAsiaError) -> AppError:
    return AppError(
        message=str(exc) or "Failed to calculate distances",
        error_code="DISTANCE_MATRIX_UNAVAILABLE",
        status_code=502,
        stage="DISTANCE_MATRIX",
        details={"code": exc.code, "status_code": exc.status_code, **exc.details},
    )


def itinerary_profile(payload: ItineraryDistancesRequest) -> str:
    """Requested profile, else the first stop transport method that maps to one."""
    if payload.profile:
        return payload.profile
    default = get_settings().distance_default_profile
    methods = [item.transport_method for item in payload.items if item.transport_method]
    if not methods:
        return default
    return profile_for_transport_method(methods[0], default)


@router.post("/itineraries/distances", response_model=ItineraryDistancesResponse)
async def itinerary_distances(payload: ItineraryDistancesRequest) -> ItineraryDistancesResponse:
    profile = itinerary_profile(payload)
    try:
        distance_map, total_distance, total_duration = await compute_itinerary_distances(payload.items, profile=profile)
    except TrackAsiaError as exc:
        raise upstream_error(exc) from exc

    stops = valid_stops(payload.items)
    segments = []
    for (from_item, _), (to_item, _) in zip(stops[:-1], stops[1:]):
        segment = distance_map.get(segment_key(from_item.item_id, to_item.item_id))
        if segment is not None:
            segments.append(
                describe_segment(
                    from_item.item_id,
                    to_item.item_id,
                    segment,
                    transport_method=from_item.transport_method or profile,
                )
            )

    return ItineraryDistancesResponse(
        distances=distance_map,
        total_distance=total_distance,
        total_duration=total_duration,
        total_distance_text=format_distance(total_distance),
        total_duration_text=format_duration(total_duration),
        segments=segments,
    )


@router.post("/places/distances", response_model=PlaceDistancesResponse)
async def place_distances(payload: PlaceDistancesRequest) -> PlaceDistancesResponse:
    enricher = PlaceDistanceEnricher()
    state = await enricher.refresh(
        payload.reference,
        payload.places,
        profile=payload.profile,
        sort_by_distance=payload.sort_by_distance,
    )
    return PlaceDistancesResponse(places=state.places, error=state.error)
