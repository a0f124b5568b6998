from __future__ import annotations

import logging
from collections import Counter
from typing import Sequence

from app.providers.trackasia import TrackAsiaClient, TrackAsiaError, VrpJob, VrpRoute, VrpSolution, VrpVehicle, get_trackasia_client
from app.schemas.api import (
    GeoPoint,
    ItineraryItem,
    OptimizedRoute,
    OptimizedRouteResult,
    ReorderedStop,
    RouteComparison,
    RouteStep,
)
from app.services.itinerary_distances import valid_stops
from app.utils.errors import AppError


LOGGER = logging.getLogger(__name__)

DEFAULT_SERVICE_SECONDS = 3600


def estimate_savings(stop_count: int) -> int:
    if stop_count <= 3:
        return 5
    if stop_count <= 5:
        return 10
    if stop_count <= 8:
        return 15
    return 20


def _route_out(route: VrpRoute) -> OptimizedRoute:
    return OptimizedRoute(
        vehicle_id=route.vehicle,
        steps=[
            RouteStep(
                type=step.type,
                location=step.location,
                item_id=step.job,
                arrival=step.arrival,
                duration=step.duration,
                distance=step.distance,
            )
            for step in route.steps
        ],
    )


def _ordered_items(route: VrpRoute, items_by_id: dict[str, ItineraryItem]) -> list[ItineraryItem]:
    return [items_by_id[step.job] for step in route.steps if step.type == "job" and step.job in items_by_id]


def _vehicle_start(start_location: GeoPoint | None, first_job: VrpJob) -> tuple[float, float]:
    if start_location is not None:
        return start_location.longitude, start_location.latitude
    return first_job.location


async def _solve(
    client: TrackAsiaClient,
    jobs: list[VrpJob],
    vehicles: list[VrpVehicle],
    profile: str,
    *,
    failure_message: str,
) -> VrpSolution:
    try:
        solution = await client.solve_vrp(jobs, vehicles, profile)
    except TrackAsiaError as exc:
        LOGGER.warning("Route optimization failed (code=%s, jobs=%s, details=%s)", exc.code, len(jobs), exc.details)
        raise AppError(
            message=failure_message,
            error_code="OPTIMIZE_FAILED",
            status_code=502,
            stage="OPTIMIZATION",
            details={"code": exc.code, "error": str(exc)},
        ) from exc

    if solution.code != "Ok" or not solution.routes:
        raise AppError(
            message=failure_message,
            error_code="OPTIMIZE_FAILED",
            status_code=502,
            stage="OPTIMIZATION",
            details={"code": solution.code, "routes": len(solution.routes)},
        )
    return solution


async def optimize_itinerary_route(
    items: Sequence[ItineraryItem],
    start_location: GeoPoint | None = None,
    profile: str = "car",
    *,
    client: TrackAsiaClient | None = None,
) -> OptimizedRouteResult:
    stops = valid_stops(items)
    if len(stops) < 2:
        raise AppError(
            message="Need at least 2 locations to optimize",
            error_code="OPTIMIZE_NOT_ENOUGH_STOPS",
            stage="OPTIMIZATION",
            details={"valid_stops": len(stops), "stops": len(items)},
        )

    jobs = [
        VrpJob(
            id=item.item_id,
            location=(point.longitude, point.latitude),
            service=item.estimated_duration or DEFAULT_SERVICE_SECONDS,
            # Earlier stops get higher priority.
            priority=len(stops) - index,
        )
        for index, (item, point) in enumerate(stops)
    ]
    start = _vehicle_start(start_location, jobs[0])
    vehicles = [VrpVehicle(id="vehicle_1", start=start, end=start)]

    solution = await _solve(
        client or get_trackasia_client(),
        jobs,
        vehicles,
        profile,
        failure_message="Unable to optimize route. Please try again.",
    )

    route = solution.routes[0]
    optimized = _ordered_items(route, {item.item_id: item for item, _ in stops})
    without_coordinates = [item for item in items if item.geo_point is None]

    return OptimizedRouteResult(
        optimized_items=optimized + without_coordinates,
        total_distance=solution.distance,
        total_duration=solution.duration,
        savings_percent=estimate_savings(len(items)),
        route=_route_out(route),
    )


async def optimize_multi_vehicle_route(
    items: Sequence[ItineraryItem],
    vehicle_count: int = 2,
    vehicle_capacity: int = 4,
    start_location: GeoPoint | None = None,
    profile: str = "car",
    *,
    client: TrackAsiaClient | None = None,
) -> list[OptimizedRouteResult]:
    stops = valid_stops(items)
    if len(stops) < vehicle_count:
        raise AppError(
            message=f"Need at least {vehicle_count} locations for {vehicle_count} vehicles",
            error_code="OPTIMIZE_NOT_ENOUGH_STOPS",
            stage="OPTIMIZATION",
            details={"valid_stops": len(stops), "vehicle_count": vehicle_count},
        )

    jobs = [
        VrpJob(
            id=item.item_id,
            location=(point.longitude, point.latitude),
            service=item.estimated_duration or DEFAULT_SERVICE_SECONDS,
            amount=[1],
        )
        for item, point in stops
    ]
    start = _vehicle_start(start_location, jobs[0])
    vehicles = [
        VrpVehicle(id=f"vehicle_{index + 1}", start=start, end=start, capacity=[vehicle_capacity])
        for index in range(vehicle_count)
    ]

    solution = await _solve(
        client or get_trackasia_client(),
        jobs,
        vehicles,
        profile,
        failure_message="Unable to optimize route for multiple vehicles",
    )

    items_by_id = {item.item_id: item for item, _ in stops}
    return [
        OptimizedRouteResult(
            optimized_items=_ordered_items(route, items_by_id),
            total_distance=route.distance,
            total_duration=route.duration,
            route=_route_out(route),
        )
        for route in solution.routes
    ]


def compare_route_order(
    original_items: Sequence[ItineraryItem],
    result: OptimizedRouteResult,
) -> RouteComparison:
    """Flag every optimized stop whose position differs from the original order.

    The optimizer's ordering and metrics are taken as given; `is_permutation`
    only reports whether both orders hold the same stops.
    """
    original_positions: dict[str, int] = {}
    for position, item in enumerate(original_items):
        original_positions.setdefault(item.item_id, position)

    stops: list[ReorderedStop] = []
    for position, item in enumerate(result.optimized_items):
        original_position = original_positions.get(item.item_id)
        stops.append(
            ReorderedStop(
                item=item,
                position=position,
                original_position=original_position,
                moved=original_position != position,
            )
        )

    is_permutation = Counter(item.item_id for item in original_items) == Counter(
        item.item_id for item in result.optimized_items
    )
    if not is_permutation:
        LOGGER.info(
            "Optimized order does not match the original stop set (original=%s, optimized=%s)",
            len(original_items),
            len(result.optimized_items),
        )

    return RouteComparison(
        stops=stops,
        moved_count=sum(1 for stop in stops if stop.moved),
        total_distance=result.total_distance,
        total_duration=result.total_duration,
        savings_percent=result.savings_percent,
        is_permutation=is_permutation,
    )
