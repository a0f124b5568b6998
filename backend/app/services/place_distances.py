from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from app.providers.trackasia import TrackAsiaClient
from app.schemas.api import GeoPoint, PlaceWithDistance, VenueOption
from app.services.distance_matrix import fetch_one_to_many_matrix
from app.services.formatting import format_distance, format_duration
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)

_VENUE_FIELDS = set(VenueOption.model_fields)


@dataclass(frozen=True)
class PlaceDistanceState:
    places: list[PlaceWithDistance] = field(default_factory=list)
    loading: bool = False
    error: str | None = None


def _distance_sort_key(place: PlaceWithDistance) -> tuple[bool, float]:
    # Places without a distance go last, keeping their relative order.
    return place.distance is None, place.distance or 0.0


def sort_places_by_distance(places: Sequence[PlaceWithDistance]) -> list[PlaceWithDistance]:
    return sorted(places, key=_distance_sort_key)


def unenriched(places: Sequence[VenueOption]) -> list[PlaceWithDistance]:
    return [PlaceWithDistance.model_validate(place.model_dump(include=_VENUE_FIELDS)) for place in places]


async def enrich_places_with_distance(
    reference: GeoPoint | None,
    places: Sequence[VenueOption],
    *,
    profile: str,
    sort_by_distance: bool = True,
    client: TrackAsiaClient | None = None,
) -> list[PlaceWithDistance]:
    if reference is None or not places:
        return unenriched(places)

    candidates = [(place, place.geo_point) for place in places]
    valid = [(place, point) for place, point in candidates if point is not None]
    if not valid:
        return unenriched(places)

    result = await fetch_one_to_many_matrix(
        reference,
        [point for _, point in valid],
        profile=profile,
        client=client,
    )

    column_by_option: dict[str, int] = {}
    for column, (place, _) in enumerate(valid):
        column_by_option.setdefault(place.option_id, column)

    enriched: list[PlaceWithDistance] = []
    for place in places:
        base = place.model_dump(include=_VENUE_FIELDS)
        column = column_by_option.get(place.option_id)
        distance = result.distances[column] if column is not None else None
        duration = result.durations[column] if column is not None else None
        if distance is None or duration is None:
            enriched.append(PlaceWithDistance.model_validate(base))
            continue
        enriched.append(
            PlaceWithDistance.model_validate(
                {
                    **base,
                    "distance": distance,
                    "duration": duration,
                    "distance_text": format_distance(distance),
                    "duration_text": format_duration(duration),
                }
            )
        )

    if sort_by_distance:
        enriched = sort_places_by_distance(enriched)
    return enriched


class PlaceDistanceEnricher:
    def __init__(self, client: TrackAsiaClient | None = None, *, default_profile: str | None = None) -> None:
        self._client = client
        self._default_profile = default_profile or get_settings().distance_default_profile
        self._generation = 0
        self._inputs: tuple | None = None

        self.places: list[PlaceWithDistance] = []
        self.loading = False
        self.error: str | None = None

    def snapshot(self) -> PlaceDistanceState:
        return PlaceDistanceState(places=list(self.places), loading=self.loading, error=self.error)

    def update(
        self,
        reference: GeoPoint | None,
        places: Sequence[VenueOption],
        *,
        enabled: bool = True,
        profile: str | None = None,
        sort_by_distance: bool = True,
    ) -> asyncio.Task | None:
        profile = profile or self._default_profile
        inputs = self._fingerprint(reference, places, enabled, profile, sort_by_distance)
        if inputs == self._inputs:
            return None
        self._inputs = inputs

        generation = self._begin()
        return asyncio.get_running_loop().create_task(
            self._run(generation, reference, list(places), enabled, profile, sort_by_distance)
        )

    async def refresh(
        self,
        reference: GeoPoint | None,
        places: Sequence[VenueOption],
        *,
        enabled: bool = True,
        profile: str | None = None,
        sort_by_distance: bool = True,
    ) -> PlaceDistanceState:
        profile = profile or self._default_profile
        self._inputs = self._fingerprint(reference, places, enabled, profile, sort_by_distance)
        generation = self._begin()
        await self._run(generation, reference, list(places), enabled, profile, sort_by_distance)
        return self.snapshot()

    @staticmethod
    def _fingerprint(
        reference: GeoPoint | None,
        places: Sequence[VenueOption],
        enabled: bool,
        profile: str,
        sort_by_distance: bool,
    ) -> tuple:
        ref = (reference.latitude, reference.longitude) if reference is not None else None
        return (ref, tuple(place.model_dump_json() for place in places), enabled, profile, sort_by_distance)

    def _begin(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _run(
        self,
        generation: int,
        reference: GeoPoint | None,
        places: list[VenueOption],
        enabled: bool,
        profile: str,
        sort_by_distance: bool,
    ) -> None:
        if not enabled or reference is None or not places:
            if self._is_current(generation):
                self.places = unenriched(places)
                self.loading = False
            return

        if not self._is_current(generation):
            return
        self.loading = True
        self.error = None

        try:
            enriched = await enrich_places_with_distance(
                reference,
                places,
                profile=profile,
                sort_by_distance=sort_by_distance,
                client=self._client,
            )
        except Exception as exc:  # noqa: BLE001
            if not self._is_current(generation):
                return
            LOGGER.warning("Failed to calculate place distances (profile=%s, places=%s): %s", profile, len(places), exc)
            self.error = str(exc) or "Failed to calculate distances"
            self.places = unenriched(places)
            self.loading = False
            return

        if not self._is_current(generation):
            return
        self.places = enriched
        self.loading = False
