from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from app.providers.trackasia import TrackAsiaClient, TrackAsiaError
from app.schemas.api import DistanceMap, DistanceSegment, GeoPoint, ItineraryItem, segment_key
from app.services.distance_matrix import fetch_all_pairs_matrix
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItineraryDistanceState:
    distances: DistanceMap = field(default_factory=dict)
    total_distance: float = 0.0
    total_duration: float = 0.0
    loading: bool = False
    error: str | None = None


def valid_stops(items: Sequence[ItineraryItem]) -> list[tuple[ItineraryItem, GeoPoint]]:
    stops: list[tuple[ItineraryItem, GeoPoint]] = []
    for item in items:
        point = item.geo_point
        if point is not None:
            stops.append((item, point))
    return stops


def build_distance_map(
    item_ids: Sequence[str],
    distances: Sequence[Sequence[float | None]],
    durations: Sequence[Sequence[float | None]],
) -> tuple[DistanceMap, float, float]:
    distance_map: DistanceMap = {}
    total_distance = 0.0
    total_duration = 0.0
    for i in range(len(item_ids) - 1):
        distance = distances[i][i + 1]
        duration = durations[i][i + 1]
        if distance is None or duration is None:
            raise TrackAsiaError(
                "No route found between consecutive stops",
                code="TRACKASIA_MATRIX_INVALID",
                details={"from": item_ids[i], "to": item_ids[i + 1]},
            )
        distance_map[segment_key(item_ids[i], item_ids[i + 1])] = DistanceSegment(distance=distance, duration=duration)
        total_distance += distance
        total_duration += duration
    return distance_map, total_distance, total_duration


async def compute_itinerary_distances(
    items: Sequence[ItineraryItem],
    *,
    profile: str,
    client: TrackAsiaClient | None = None,
) -> tuple[DistanceMap, float, float]:
    stops = valid_stops(items)
    if len(stops) < 2:
        return {}, 0.0, 0.0
    result = await fetch_all_pairs_matrix([point for _, point in stops], profile=profile, client=client)
    return build_distance_map([item.item_id for item, _ in stops], result.distances, result.durations)


class ItineraryDistanceAggregator:
    """Holds consecutive-leg distances for one itinerary view.

    Every recomputation takes a new generation number; results are only
    written while their generation is still the latest, so a slow response
    from an older cycle can never overwrite a newer one.
    """

    def __init__(self, client: TrackAsiaClient | None = None, *, default_profile: str | None = None) -> None:
        self._client = client
        self._default_profile = default_profile or get_settings().distance_default_profile
        self._generation = 0
        self._inputs: tuple | None = None

        self.distances: DistanceMap = {}
        self.total_distance = 0.0
        self.total_duration = 0.0
        self.loading = False
        self.error: str | None = None

    def snapshot(self) -> ItineraryDistanceState:
        return ItineraryDistanceState(
            distances=dict(self.distances),
            total_distance=self.total_distance,
            total_duration=self.total_duration,
            loading=self.loading,
            error=self.error,
        )

    def update(
        self,
        items: Sequence[ItineraryItem],
        *,
        profile: str | None = None,
        enabled: bool = True,
    ) -> asyncio.Task | None:
        """Start a new cycle when the stops, profile or enabled flag changed."""
        profile = profile or self._default_profile
        inputs = (tuple(item.model_dump_json() for item in items), profile, enabled)
        if inputs == self._inputs:
            return None
        self._inputs = inputs

        generation = self._begin()
        return asyncio.get_running_loop().create_task(self._run(generation, list(items), profile, enabled))

    async def refresh(
        self,
        items: Sequence[ItineraryItem],
        *,
        profile: str | None = None,
        enabled: bool = True,
    ) -> ItineraryDistanceState:
        profile = profile or self._default_profile
        self._inputs = (tuple(item.model_dump_json() for item in items), profile, enabled)
        generation = self._begin()
        await self._run(generation, list(items), profile, enabled)
        return self.snapshot()

    def _begin(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _reset(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self.distances = {}
        self.total_distance = 0.0
        self.total_duration = 0.0
        self.loading = False

    async def _run(self, generation: int, items: list[ItineraryItem], profile: str, enabled: bool) -> None:
        if not enabled or len(items) < 2:
            self._reset(generation)
            return

        stops = valid_stops(items)
        if len(stops) < 2:
            self._reset(generation)
            return

        if not self._is_current(generation):
            return
        self.loading = True
        self.error = None

        try:
            result = await fetch_all_pairs_matrix(
                [point for _, point in stops],
                profile=profile,
                client=self._client,
            )
            distance_map, total_distance, total_duration = build_distance_map(
                [item.item_id for item, _ in stops],
                result.distances,
                result.durations,
            )
        except Exception as exc:  # noqa: BLE001
            if not self._is_current(generation):
                return
            LOGGER.warning(
                "Failed to calculate itinerary distances (profile=%s, stops=%s): %s",
                profile,
                len(stops),
                exc,
            )
            self.error = str(exc) or "Failed to calculate distances"
            self.loading = False
            return

        if not self._is_current(generation):
            LOGGER.debug("Dropping stale itinerary distance result (generation=%s)", generation)
            return

        self.distances = distance_map
        self.total_distance = total_distance
        self.total_duration = total_duration
        self.loading = False
