from __future__ import annotations

import asyncio
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from app.services.cache import CacheBackend, get_cache, matrix_cache_key
from app.utils.settings import TRAVEL_PROFILES, get_settings


LOGGER = logging.getLogger(__name__)

DISTANCE_MATRIX_PATH = "/distance-matrix/v1"
VRP_PATH = "/vehicle-routing-problem/v1"
DEFAULT_ANNOTATIONS = "duration,distance"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Straight-line speeds (m/s) used when no API key is configured.
MOCK_SPEEDS_MPS = {
    "car": 11.0,
    "moto": 9.5,
    "walk": 1.4,
    "truck": 8.5,
}


@dataclass
class DistanceMatrixResult:
    distances: list[list[float | None]] | None
    durations: list[list[float | None]] | None
    code: str = "Ok"


@dataclass
class VrpJob:
    id: str
    location: tuple[float, float]  # lon, lat
    service: int = 3600
    priority: int | None = None
    amount: list[int] | None = None


@dataclass
class VrpVehicle:
    id: str
    start: tuple[float, float]  # lon, lat
    end: tuple[float, float] | None = None
    capacity: list[int] | None = None


@dataclass
class VrpStep:
    type: str
    location: tuple[float, float]
    job: str | None = None
    arrival: float | None = None
    duration: float | None = None
    distance: float | None = None


@dataclass
class VrpRoute:
    vehicle: str
    cost: float
    service: float
    duration: float
    distance: float
    steps: list[VrpStep] = field(default_factory=list)


@dataclass
class VrpSolution:
    code: str
    routes: list[VrpRoute]
    distance: float
    duration: float
    unassigned: list[dict[str, Any]] = field(default_factory=list)


class TrackAsiaError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "TRACKASIA_ERROR",
        status_code: int | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}


def extract_lat_lon(node: Any) -> tuple[float, float]:
    lat: Any = None
    lon: Any = None
    if isinstance(node, (tuple, list)) and len(node) == 2:
        lat, lon = node
    elif isinstance(node, dict):
        lat = node.get("latitude") if "latitude" in node else node.get("lat")
        lon = node.get("longitude") if "longitude" in node else node.get("lon")
    else:
        lat = getattr(node, "latitude", None)
        lon = getattr(node, "longitude", None)
    if lat is None or lon is None:
        raise TrackAsiaError("Invalid coordinates", code="TRACKASIA_INPUT_INVALID")
    return float(lat), float(lon)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    radius = 6371000.0
    p = math.pi / 180
    dlat = (lat2 - lat1) * p
    dlon = (lon2 - lon1) * p
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1 * p) * math.cos(lat2 * p) * math.sin(dlon / 2) ** 2
    )
    return 2 * radius * math.asin(math.sqrt(a))


class TrackAsiaClient:
    def __init__(self, http: httpx.AsyncClient | None = None) -> None:
        self.settings = get_settings()
        self.cache: CacheBackend | None = None
        self.http = http or httpx.AsyncClient(timeout=self.settings.trackasia_timeout_seconds)
        self._cache_ttl_seconds = int(self.settings.distance_cache_ttl_seconds)

    @property
    def mock_mode(self) -> bool:
        return self.settings.trackasia_mock_mode

    async def _resolve_cache(self) -> CacheBackend:
        # Redis calls block, so they run in a worker thread.
        if self.cache is None:
            self.cache = await asyncio.to_thread(get_cache)
        return self.cache

    @staticmethod
    def _profile(value: str) -> str:
        profile = str(value or "").strip().lower()
        if profile not in TRAVEL_PROFILES:
            raise TrackAsiaError(
                f"Unsupported travel profile: {value}",
                code="TRACKASIA_INPUT_INVALID",
                details={"profile": value, "supported": list(TRAVEL_PROFILES)},
            )
        return profile

    @staticmethod
    def _coordinates_path(points: Sequence[tuple[float, float]]) -> str:
        return ";".join(f"{lon:.6f},{lat:.6f}" for lat, lon in points)

    @staticmethod
    def _sleep_backoff(attempt: int) -> float:
        return min(3.0, (2**attempt) * 0.2 + random.random() * 0.1)

    async def _get(self, url: str, *, params: dict[str, Any]) -> dict[str, Any]:
        max_attempts = int(self.settings.trackasia_max_attempts)
        params = {"key": self.settings.trackasia_api_key, **params}

        last_error: TrackAsiaError | None = None
        for attempt in range(max_attempts):
            try:
                response = await self.http.get(url, params=params)
            except httpx.TimeoutException as exc:
                last_error = TrackAsiaError(
                    "TrackAsia request timed out",
                    code="TRACKASIA_TIMEOUT",
                    retryable=True,
                    details={"error_type": exc.__class__.__name__, "attempt": attempt + 1},
                )
                if attempt == max_attempts - 1:
                    raise last_error from exc
                await asyncio.sleep(self._sleep_backoff(attempt))
                continue
            except httpx.RequestError as exc:
                last_error = TrackAsiaError(
                    "TrackAsia request failed",
                    code="TRACKASIA_REQUEST_ERROR",
                    retryable=True,
                    details={"error_type": exc.__class__.__name__, "error": str(exc), "attempt": attempt + 1},
                )
                if attempt == max_attempts - 1:
                    LOGGER.warning("TrackAsia request error after retries (details=%s)", last_error.details)
                    raise last_error from exc
                await asyncio.sleep(self._sleep_backoff(attempt))
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                last_error = TrackAsiaError(
                    "TrackAsia unavailable",
                    code="TRACKASIA_UNAVAILABLE",
                    status_code=response.status_code,
                    retryable=True,
                    details={"status_code": response.status_code, "attempt": attempt + 1},
                )
                if attempt == max_attempts - 1:
                    raise last_error
                await asyncio.sleep(self._sleep_backoff(attempt))
                continue

            if response.status_code >= 400:
                raise TrackAsiaError(
                    f"TrackAsia API error: {response.status_code}",
                    code="TRACKASIA_REJECTED",
                    status_code=response.status_code,
                    details={"status_code": response.status_code, "body": response.text[:300]},
                )

            try:
                payload = response.json()
            except ValueError as exc:
                raise TrackAsiaError("TrackAsia returned a non-JSON body", code="TRACKASIA_INVALID_RESPONSE") from exc
            if not isinstance(payload, dict):
                raise TrackAsiaError("TrackAsia returned an unexpected body", code="TRACKASIA_INVALID_RESPONSE")
            return payload

        if last_error:
            raise last_error
        raise TrackAsiaError("TrackAsia request failed", code="TRACKASIA_ERROR")

    def _mock_matrix(
        self,
        profile: str,
        points: list[tuple[float, float]],
        sources: Sequence[int],
        destinations: Sequence[int],
    ) -> DistanceMatrixResult:
        speed = MOCK_SPEEDS_MPS[profile]
        distances: list[list[float | None]] = []
        durations: list[list[float | None]] = []
        for i in sources:
            distance_row: list[float | None] = []
            duration_row: list[float | None] = []
            for j in destinations:
                meters = haversine_m(points[i][0], points[i][1], points[j][0], points[j][1])
                distance_row.append(round(meters, 1))
                duration_row.append(round(meters / speed, 1))
            distances.append(distance_row)
            durations.append(duration_row)
        return DistanceMatrixResult(distances=distances, durations=durations)

    @staticmethod
    def _parse_matrix(payload: dict[str, Any], key: str) -> list[list[float | None]] | None:
        raw = payload.get(key)
        if not isinstance(raw, list):
            return None
        rows: list[list[float | None]] = []
        for row in raw:
            if not isinstance(row, list):
                return None
            rows.append([float(cell) if isinstance(cell, (int, float)) else None for cell in row])
        return rows

    async def get_distance_matrix(
        self,
        profile: str,
        coordinates: Sequence[Any],
        *,
        sources: Sequence[int] | None = None,
        destinations: Sequence[int] | None = None,
        annotations: str = DEFAULT_ANNOTATIONS,
    ) -> DistanceMatrixResult:
        profile = self._profile(profile)
        points = [extract_lat_lon(node) for node in coordinates]
        if not points:
            raise TrackAsiaError("Distance matrix needs at least one coordinate", code="TRACKASIA_INPUT_INVALID")

        max_points = int(self.settings.matrix_max_coordinates)
        if len(points) > max_points:
            raise TrackAsiaError(
                "Distance matrix guardrail exceeded",
                code="TRACKASIA_MATRIX_LIMIT_EXCEEDED",
                details={"coordinates": len(points), "max": max_points},
            )

        for index in list(sources or []) + list(destinations or []):
            if index < 0 or index >= len(points):
                raise TrackAsiaError(
                    "Matrix index out of range",
                    code="TRACKASIA_INPUT_INVALID",
                    details={"index": index, "coordinates": len(points)},
                )

        mode = "mock" if self.mock_mode else "live"
        key = matrix_cache_key(mode, profile, points, sources=sources, destinations=destinations, annotations=annotations)
        if self._cache_ttl_seconds > 0:
            cache = await self._resolve_cache()
            hit = await asyncio.to_thread(cache.get, key)
            if isinstance(hit, dict):
                return DistanceMatrixResult(
                    distances=hit.get("distances"),
                    durations=hit.get("durations"),
                    code=str(hit.get("code") or "Ok"),
                )

        if self.mock_mode:
            result = self._mock_matrix(
                profile,
                points,
                list(sources) if sources is not None else list(range(len(points))),
                list(destinations) if destinations is not None else list(range(len(points))),
            )
        else:
            params: dict[str, Any] = {"annotations": annotations}
            if sources is not None:
                params["sources"] = ";".join(str(i) for i in sources)
            if destinations is not None:
                params["destinations"] = ";".join(str(i) for i in destinations)
            if self.settings.trackasia_fallback_speed:
                params["fallback_speed"] = str(self.settings.trackasia_fallback_speed)

            url = f"{self.settings.trackasia_base_url}{DISTANCE_MATRIX_PATH}/{profile}/{self._coordinates_path(points)}"
            payload = await self._get(url, params=params)
            code = str(payload.get("code") or "")
            if code and code != "Ok":
                raise TrackAsiaError(
                    f"TrackAsia distance matrix returned: {code}",
                    code="TRACKASIA_MATRIX_FAILED",
                    details={"code": code, "message": payload.get("message")},
                )
            result = DistanceMatrixResult(
                distances=self._parse_matrix(payload, "distances"),
                durations=self._parse_matrix(payload, "durations"),
                code=code or "Ok",
            )

        if self._cache_ttl_seconds > 0 and result.distances is not None and result.durations is not None:
            cache = await self._resolve_cache()
            await asyncio.to_thread(
                cache.set,
                key,
                {"distances": result.distances, "durations": result.durations, "code": result.code},
                self._cache_ttl_seconds,
            )
        return result

    def _mock_vrp(self, jobs: list[VrpJob], vehicle: VrpVehicle, profile: str) -> VrpSolution:
        # Visits jobs in submitted order; real sequencing only happens server-side.
        speed = MOCK_SPEEDS_MPS[profile]
        stops: list[tuple[str, tuple[float, float], str | None]] = [("start", vehicle.start, None)]
        stops.extend(("job", job.location, job.id) for job in jobs)
        if vehicle.end is not None:
            stops.append(("end", vehicle.end, None))

        steps: list[VrpStep] = []
        distance = 0.0
        duration = 0.0
        service_total = 0.0
        previous: tuple[float, float] | None = None
        for step_type, location, job_id in stops:
            leg = 0.0
            if previous is not None:
                leg = haversine_m(previous[1], previous[0], location[1], location[0])
            distance += leg
            duration += leg / speed
            service = next((job.service for job in jobs if job.id == job_id), 0) if job_id else 0
            steps.append(
                VrpStep(
                    type=step_type,
                    location=location,
                    job=job_id,
                    arrival=round(duration + service_total, 1),
                    duration=round(duration, 1),
                    distance=round(distance, 1),
                )
            )
            service_total += service
            previous = location

        route = VrpRoute(
            vehicle=vehicle.id,
            cost=round(duration, 1),
            service=service_total,
            duration=round(duration, 1),
            distance=round(distance, 1),
            steps=steps,
        )
        return VrpSolution(code="Ok", routes=[route], distance=route.distance, duration=route.duration)

    @staticmethod
    def _parse_vrp_payload(payload: dict[str, Any], jobs: list[VrpJob]) -> VrpSolution:
        code = str(payload.get("code") or "")
        if code != "Ok":
            raise TrackAsiaError(f"TrackAsia VRP returned: {code or 'unknown'}", code="TRACKASIA_VRP_FAILED")

        trips = payload.get("trips") or []
        if not isinstance(trips, list) or not trips:
            raise TrackAsiaError("No route found", code="TRACKASIA_VRP_FAILED")

        routes: list[VrpRoute] = []
        for index, trip in enumerate(trips):
            if not isinstance(trip, dict):
                raise TrackAsiaError("TrackAsia VRP trip format invalid", code="TRACKASIA_INVALID_RESPONSE")
            steps: list[VrpStep] = []
            for step in trip.get("steps") or []:
                raw_type = str(step.get("type") or "")
                step_type = raw_type if raw_type in {"start", "end"} else "job"
                job_index = step.get("way_point")
                job_id = None
                if step_type == "job" and isinstance(job_index, int) and 0 <= job_index < len(jobs):
                    job_id = jobs[job_index].id
                location = step.get("location") or (0.0, 0.0)
                steps.append(
                    VrpStep(
                        type=step_type,
                        location=(float(location[0]), float(location[1])),
                        job=job_id,
                        arrival=step.get("arrival"),
                        duration=step.get("duration"),
                        distance=step.get("distance"),
                    )
                )
            routes.append(
                VrpRoute(
                    vehicle=str(trip.get("vehicle_id") or f"vehicle_{index + 1}"),
                    cost=float(trip.get("cost") or 0),
                    service=float(trip.get("service") or 0),
                    duration=float(trip.get("duration") or 0),
                    distance=float(trip.get("distance") or 0),
                    steps=steps,
                )
            )

        unassigned = payload.get("unassigned") or []
        return VrpSolution(
            code=code,
            routes=routes,
            distance=sum(route.distance for route in routes),
            duration=sum(route.duration for route in routes),
            unassigned=[item for item in unassigned if isinstance(item, dict)],
        )

    async def solve_vrp(self, jobs: list[VrpJob], vehicles: list[VrpVehicle], profile: str = "car") -> VrpSolution:
        profile = self._profile(profile)
        if not jobs or not vehicles:
            raise TrackAsiaError("VRP needs at least one job and one vehicle", code="TRACKASIA_INPUT_INVALID")

        if self.mock_mode:
            return self._mock_vrp(jobs, vehicles[0], profile)

        points = [(job.location[1], job.location[0]) for job in jobs]
        url = f"{self.settings.trackasia_base_url}{VRP_PATH}/{profile}/{self._coordinates_path(points)}"
        payload = await self._get(url, params={"roundtrip": "true" if vehicles[0].end else "false"})
        solution = self._parse_vrp_payload(payload, jobs)
        LOGGER.info(
            "VRP solved (jobs=%s, routes=%s, distance_m=%s, duration_s=%s)",
            len(jobs),
            len(solution.routes),
            solution.distance,
            solution.duration,
        )
        return solution

    async def aclose(self) -> None:
        await self.http.aclose()


_CLIENT: TrackAsiaClient | None = None


def get_trackasia_client() -> TrackAsiaClient:
    global _CLIENT
    if _CLIENT is None:
        _CLIENT = TrackAsiaClient()
    return _CLIENT


async def close_trackasia_client() -> None:
    global _CLIENT
    if _CLIENT is not None:
        await _CLIENT.aclose()
        _CLIENT = None
