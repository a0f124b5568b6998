from __future__ import annotations

from fastapi import APIRouter

from app.schemas.api import (
    CompareRouteRequest,
    MultiVehicleOptimizeRequest,
    OptimizedRouteResult,
    OptimizeRouteRequest,
    OptimizeRouteResponse,
    RouteComparison,
)
from app.services.route_optimization import compare_route_order, optimize_itinerary_route, optimize_multi_vehicle_route
from app.utils.settings import get_settings

router = APIRouter(prefix="/api/v1/itineraries/optimize", tags=["optimization"])


@router.post("", response_model=OptimizeRouteResponse)
async def optimize_route(payload: OptimizeRouteRequest) -> OptimizeRouteResponse:
    profile = payload.profile or get_settings().distance_default_profile
    result = await optimize_itinerary_route(payload.items, payload.start_location, profile)
    return OptimizeRouteResponse(result=result, comparison=compare_route_order(payload.items, result))


@router.post("/multi-vehicle", response_model=list[OptimizedRouteResult])
async def optimize_multi_vehicle(payload: MultiVehicleOptimizeRequest) -> list[OptimizedRouteResult]:
    profile = payload.profile or get_settings().distance_default_profile
    return await optimize_multi_vehicle_route(
        payload.items,
        vehicle_count=payload.vehicle_count,
        vehicle_capacity=payload.vehicle_capacity,
        start_location=payload.start_location,
        profile=profile,
    )


@router.post("/compare", response_model=RouteComparison)
def compare_route(payload: CompareRouteRequest) -> RouteComparison:
    return compare_route_order(payload.original_items, payload.result)
