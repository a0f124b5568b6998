"""Call-site helpers for the two matrix request shapes.

All-pairs requests cover every coordinate as both source and destination;
one-to-many requests put the origin at index 0 and the candidates at
indices 1..n. Keeping them apart avoids mixing up the index spaces.
"""
from __future__ import annotations

from dataclasses import dataclass

from app.providers.trackasia import DEFAULT_ANNOTATIONS, DistanceMatrixResult, TrackAsiaClient, TrackAsiaError, get_trackasia_client
from app.schemas.api import DistanceSegment, GeoPoint


@dataclass
class OneToManyResult:
    distances: list[float | None]
    durations: list[float | None]


def _invalid_response(details: dict | None = None) -> TrackAsiaError:
    return TrackAsiaError(
        "Invalid distance matrix response",
        code="TRACKASIA_MATRIX_INVALID",
        details=details or {},
    )


def _points(points: list[GeoPoint]) -> list[tuple[float, float]]:
    return [(point.latitude, point.longitude) for point in points]


async def fetch_all_pairs_matrix(
    points: list[GeoPoint],
    *,
    profile: str,
    client: TrackAsiaClient | None = None,
) -> DistanceMatrixResult:
    client = client or get_trackasia_client()
    result = await client.get_distance_matrix(profile, _points(points), annotations=DEFAULT_ANNOTATIONS)
    if result.distances is None or result.durations is None:
        raise _invalid_response()

    size = len(points)
    for matrix in (result.distances, result.durations):
        if len(matrix) != size or any(len(row) != size for row in matrix):
            raise _invalid_response({"expected_size": size, "rows": len(matrix)})
    return result


async def fetch_one_to_many_matrix(
    origin: GeoPoint,
    destinations: list[GeoPoint],
    *,
    profile: str,
    client: TrackAsiaClient | None = None,
) -> OneToManyResult:
    client = client or get_trackasia_client()
    result = await client.get_distance_matrix(
        profile,
        _points([origin, *destinations]),
        sources=[0],
        destinations=[index + 1 for index in range(len(destinations))],
        annotations=DEFAULT_ANNOTATIONS,
    )
    if not result.distances or not result.durations:
        raise _invalid_response()

    distance_row = result.distances[0]
    duration_row = result.durations[0]
    if len(distance_row) != len(destinations) or len(duration_row) != len(destinations):
        raise _invalid_response({"expected_size": len(destinations), "columns": len(distance_row)})
    return OneToManyResult(distances=list(distance_row), durations=list(duration_row))


async def calculate_distance(
    origin: GeoPoint,
    destination: GeoPoint,
    *,
    profile: str = "car",
    client: TrackAsiaClient | None = None,
) -> DistanceSegment:
    result = await fetch_one_to_many_matrix(origin, [destination], profile=profile, client=client)
    return DistanceSegment(distance=result.distances[0] or 0.0, duration=result.durations[0] or 0.0)
