from __future__ import annotations

import asyncio
import threading

import httpx
import pytest

from app.providers.trackasia import TrackAsiaClient, TrackAsiaError, VrpJob, VrpVehicle
from app.services.cache import InMemoryCache, matrix_cache_key
from app.utils.settings import get_settings


MATRIX_PAYLOAD = {
    "code": "Ok",
    "distances": [[0, 1500.5], [1490, 0]],
    "durations": [[0, 300], [310, None]],
}


@pytest.fixture()
def live_settings(monkeypatch):
    monkeypatch.setenv("TRACKASIA_API_KEY", "test-key")
    monkeypatch.setenv("TRACKASIA_BASE_URL", "https://maps.example.test/")
    monkeypatch.setattr(TrackAsiaClient, "_sleep_backoff", staticmethod(lambda attempt: 0.0))
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


def _client(handler) -> TrackAsiaClient:
    return TrackAsiaClient(http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_matrix_request_carries_coordinates_and_params(live_settings):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=MATRIX_PAYLOAD)

    client = _client(handler)
    result = asyncio.run(
        client.get_distance_matrix("walk", [(10.7756, 106.7019), (10.7626, 106.6822)], sources=[0], destinations=[1])
    )

    request = seen[0]
    assert request.url.path == "/distance-matrix/v1/walk/106.701900,10.775600;106.682200,10.762600"
    assert request.url.params["key"] == "test-key"
    assert request.url.params["sources"] == "0"
    assert request.url.params["destinations"] == "1"
    assert request.url.params["annotations"] == "duration,distance"
    assert result.distances == [[0.0, 1500.5], [1490.0, 0.0]]
    assert result.durations[1][1] is None


def test_all_pairs_request_omits_sources_and_destinations(live_settings):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=MATRIX_PAYLOAD)

    asyncio.run(_client(handler).get_distance_matrix("car", [(10.7, 106.6), (10.8, 106.7)]))

    assert "sources" not in seen[0].url.params
    assert "destinations" not in seen[0].url.params


def test_retries_transient_status_then_succeeds(live_settings):
    statuses = iter([503, 429, 200])
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        calls.append(status)
        if status != 200:
            return httpx.Response(status, text="busy")
        return httpx.Response(200, json=MATRIX_PAYLOAD)

    result = asyncio.run(_client(handler).get_distance_matrix("car", [(10.7, 106.6), (10.8, 106.7)]))

    assert calls == [503, 429, 200]
    assert result.distances[0][1] == 1500.5


def test_gives_up_after_max_attempts(live_settings):
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(502)

    with pytest.raises(TrackAsiaError) as err:
        asyncio.run(_client(handler).get_distance_matrix("car", [(10.7, 106.6), (10.8, 106.7)]))

    assert err.value.code == "TRACKASIA_UNAVAILABLE"
    assert err.value.retryable is True
    assert len(calls) == live_settings.trackasia_max_attempts


def test_client_error_is_not_retried(live_settings):
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(400, text="bad coordinates")

    with pytest.raises(TrackAsiaError) as err:
        asyncio.run(_client(handler).get_distance_matrix("car", [(10.7, 106.6), (10.8, 106.7)]))

    assert err.value.code == "TRACKASIA_REJECTED"
    assert err.value.status_code == 400
    assert str(err.value) == "TrackAsia API error: 400"
    assert len(calls) == 1


def test_timeout_is_reported(live_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TrackAsiaError) as err:
        asyncio.run(_client(handler).get_distance_matrix("car", [(10.7, 106.6), (10.8, 106.7)]))

    assert err.value.code == "TRACKASIA_TIMEOUT"


def test_non_ok_matrix_code_fails(live_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": "InvalidQuery", "message": "bad"})

    with pytest.raises(TrackAsiaError) as err:
        asyncio.run(_client(handler).get_distance_matrix("car", [(10.7, 106.6), (10.8, 106.7)]))

    assert err.value.code == "TRACKASIA_MATRIX_FAILED"


def test_guardrail_and_index_validation(live_settings, monkeypatch):
    monkeypatch.setenv("MATRIX_MAX_COORDINATES", "3")
    get_settings.cache_clear()
    client = _client(lambda request: httpx.Response(200, json=MATRIX_PAYLOAD))

    with pytest.raises(TrackAsiaError) as too_many:
        asyncio.run(client.get_distance_matrix("car", [(10.0, 106.0)] * 4))
    with pytest.raises(TrackAsiaError) as out_of_range:
        asyncio.run(client.get_distance_matrix("car", [(10.0, 106.0), (10.1, 106.1)], sources=[0], destinations=[2]))
    with pytest.raises(TrackAsiaError) as bad_profile:
        asyncio.run(client.get_distance_matrix("plane", [(10.0, 106.0), (10.1, 106.1)]))

    assert too_many.value.code == "TRACKASIA_MATRIX_LIMIT_EXCEEDED"
    assert out_of_range.value.code == "TRACKASIA_INPUT_INVALID"
    assert bad_profile.value.code == "TRACKASIA_INPUT_INVALID"


def test_cached_matrix_skips_second_request(live_settings, monkeypatch):
    monkeypatch.setenv("DISTANCE_CACHE_TTL_SECONDS", "60")
    get_settings.cache_clear()
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, json=MATRIX_PAYLOAD)

    client = _client(handler)
    points = [(10.7, 106.6), (10.8, 106.7)]

    async def scenario():
        first = await client.get_distance_matrix("car", points)
        second = await client.get_distance_matrix("car", points)
        return first, second

    first, second = asyncio.run(scenario())

    assert len(calls) == 1
    assert second.distances == first.distances
    assert client.cache.get(matrix_cache_key("live", "car", points)) is not None
    assert client.cache.get(matrix_cache_key("mock", "car", points)) is None


def test_mock_mode_uses_straight_line_estimates():
    client = TrackAsiaClient(http=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))))
    assert client.mock_mode is True

    result = asyncio.run(
        client.get_distance_matrix("walk", [(10.7756, 106.7019), (10.7626, 106.6822), (10.0, 106.0)], sources=[0], destinations=[1, 2])
    )

    assert len(result.distances) == 1
    assert len(result.distances[0]) == 2
    assert 2000 < result.distances[0][0] < 3000
    assert result.durations[0][0] == pytest.approx(result.distances[0][0] / 1.4, rel=0.01)


def test_mock_vrp_visits_jobs_in_order():
    client = TrackAsiaClient(http=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))))
    jobs = [VrpJob(id="A", location=(106.60, 10.70)), VrpJob(id="B", location=(106.70, 10.80))]
    vehicle = VrpVehicle(id="vehicle_1", start=(106.60, 10.70), end=(106.60, 10.70))

    solution = asyncio.run(client.solve_vrp(jobs, [vehicle], "car"))

    steps = solution.routes[0].steps
    assert [step.type for step in steps] == ["start", "job", "job", "end"]
    assert [step.job for step in steps if step.type == "job"] == ["A", "B"]
    assert solution.distance > 0


def test_solve_vrp_sends_roundtrip_request(live_settings):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "code": "Ok",
                "trips": [
                    {
                        "distance": 900,
                        "duration": 120,
                        "steps": [
                            {"type": "start", "location": [106.6, 10.7]},
                            {"type": "job", "location": [106.7, 10.8], "way_point": 1},
                            {"type": "job", "location": [106.6, 10.7], "way_point": 0},
                            {"type": "end", "location": [106.6, 10.7]},
                        ],
                    }
                ],
            },
        )

    jobs = [VrpJob(id="A", location=(106.6, 10.7)), VrpJob(id="B", location=(106.7, 10.8))]
    vehicle = VrpVehicle(id="vehicle_1", start=(106.6, 10.7), end=(106.6, 10.7))

    solution = asyncio.run(_client(handler).solve_vrp(jobs, [vehicle], "truck"))

    assert seen[0].url.path == "/vehicle-routing-problem/v1/truck/106.600000,10.700000;106.700000,10.800000"
    assert seen[0].url.params["roundtrip"] == "true"
    assert [step.job for step in solution.routes[0].steps if step.type == "job"] == ["B", "A"]
    assert solution.routes[0].vehicle == "vehicle_1"


class ThreadRecordingCache(InMemoryCache):
    def __init__(self):
        super().__init__()
        self.threads: list[int] = []

    def get(self, key):
        self.threads.append(threading.get_ident())
        return super().get(key)

    def set(self, key, value, ttl_seconds=None):
        self.threads.append(threading.get_ident())
        super().set(key, value, ttl_seconds)


def test_cache_io_runs_off_the_event_loop_thread(monkeypatch):
    monkeypatch.setenv("DISTANCE_CACHE_TTL_SECONDS", "60")
    get_settings.cache_clear()
    client = TrackAsiaClient(http=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))))
    cache = ThreadRecordingCache()
    client.cache = cache

    async def scenario():
        await client.get_distance_matrix("car", [(10.7, 106.6), (10.8, 106.7)])
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert len(cache.threads) == 2
    assert loop_thread not in cache.threads


def test_mock_and_live_results_use_separate_cache_keys():
    points = [(10.7, 106.6), (10.8, 106.7)]

    mock_key = matrix_cache_key("mock", "car", points)
    live_key = matrix_cache_key("live", "car", points)

    assert mock_key != live_key
    assert mock_key.startswith("distance_matrix:mock:car:")
    assert live_key.startswith("distance_matrix:live:car:")
