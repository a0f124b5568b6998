from app.api import distances as distances_api
from app.api import health as health_api
from app.providers.trackasia import TrackAsiaError


def _item(item_id: str, lat: float | None = None, lon: float | None = None) -> dict:
    return {
        "item_id": item_id,
        "activity_title": f"Visit {item_id}",
        "place": {"place_id": f"place-{item_id}", "latitude": lat, "longitude": lon},
    }


def test_health_endpoints(client):
    health = client.get("/api/v1/health")
    live = client.get("/health/live")
    ready = client.get("/health/ready")

    assert health.status_code == 200
    assert health.json()["distance_mock_mode"] is True
    assert health.json()["default_profile"] == "car"
    assert live.json()["status"] == "ok"
    assert ready.status_code == 200
    assert ready.json()["checks"]["distance_provider"]["status"] == "skipped"
    assert "X-Correlation-ID" in health.headers


def test_health_ready_returns_503_when_cache_unready(client, monkeypatch):
    monkeypatch.setattr(health_api, "_check_cache_ready", lambda: {"status": "unready", "detail": "redis down"})

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["ready"] is False
    assert response.json()["status"] == "degraded"


def test_itinerary_distances_endpoint_returns_segments(client):
    response = client.post(
        "/api/v1/itineraries/distances",
        json={
            "items": [_item("A", 10.7756, 106.7019), _item("X"), _item("B", 10.7626, 106.6822), _item("C", 10.7769, 106.7009)],
            "profile": "walk",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body["distances"]) == {"A-B", "B-C"}
    assert [segment["key"] for segment in body["segments"]] == ["A-B", "B-C"]
    assert body["segments"][0]["icon"] == "🚶"
    assert body["total_distance"] == sum(leg["distance"] for leg in body["distances"].values())
    assert body["total_distance_text"].endswith("km")


def test_itinerary_distances_with_single_stop_is_empty(client):
    response = client.post("/api/v1/itineraries/distances", json={"items": [_item("A", 10.7, 106.6), _item("B")]})

    assert response.status_code == 200
    assert response.json()["distances"] == {}
    assert response.json()["total_distance"] == 0


def test_itinerary_distances_maps_provider_failure_to_502(client, monkeypatch):
    async def failing(items, *, profile, client=None):
        raise TrackAsiaError("TrackAsia unavailable", code="TRACKASIA_UNAVAILABLE", status_code=503)

    monkeypatch.setattr(distances_api, "compute_itinerary_distances", failing)

    response = client.post(
        "/api/v1/itineraries/distances",
        json={"items": [_item("A", 10.7, 106.6), _item("B", 10.8, 106.7)]},
    )

    assert response.status_code == 502
    body = response.json()
    assert body["error_code"] == "DISTANCE_MATRIX_UNAVAILABLE"
    assert body["details"]["code"] == "TRACKASIA_UNAVAILABLE"
    assert body["correlation_id"] == response.headers["X-Correlation-ID"]


def test_place_distances_endpoint_sorts_candidates(client):
    response = client.post(
        "/api/v1/places/distances",
        json={
            "reference": {"latitude": 10.7756, "longitude": 106.7019},
            "places": [
                {"option_id": "far", "external_latitude": 10.90, "external_longitude": 106.80},
                {"option_id": "unknown"},
                {"option_id": "near", "place_id": "p-near", "place_latitude": 10.7760, "place_longitude": 106.7020},
            ],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["error"] is None
    assert [place["option_id"] for place in body["places"]] == ["near", "far", "unknown"]
    assert body["places"][0]["distance_text"].endswith(" m")
    assert body["places"][2]["distance"] is None


def test_place_distances_without_reference_returns_input(client):
    response = client.post("/api/v1/places/distances", json={"places": [{"option_id": "b"}, {"option_id": "a"}]})

    assert response.status_code == 200
    assert [place["option_id"] for place in response.json()["places"]] == ["b", "a"]


def test_optimize_endpoint_returns_result_and_comparison(client):
    response = client.post(
        "/api/v1/itineraries/optimize",
        json={"items": [_item("A", 10.7756, 106.7019), _item("X"), _item("B", 10.7626, 106.6822)]},
    )

    assert response.status_code == 200
    body = response.json()
    assert [item["item_id"] for item in body["result"]["optimized_items"]] == ["A", "B", "X"]
    assert body["result"]["savings_percent"] == 5
    stops = body["comparison"]["stops"]
    assert [(stop["item"]["item_id"], stop["moved"]) for stop in stops] == [("A", False), ("B", True), ("X", True)]
    assert body["comparison"]["moved_count"] == 2
    assert body["comparison"]["is_permutation"] is True


def test_optimize_with_one_geocoded_stop_is_rejected(client):
    response = client.post("/api/v1/itineraries/optimize", json={"items": [_item("A", 10.7, 106.6), _item("B")]})

    assert response.status_code == 400
    assert response.json()["error_code"] == "OPTIMIZE_NOT_ENOUGH_STOPS"


def test_optimize_rejects_empty_items(client):
    response = client.post("/api/v1/itineraries/optimize", json={"items": []})

    assert response.status_code == 422


def test_multi_vehicle_endpoint(client):
    response = client.post(
        "/api/v1/itineraries/optimize/multi-vehicle",
        json={
            "items": [_item("A", 10.77, 106.70), _item("B", 10.76, 106.68), _item("C", 10.78, 106.69)],
            "vehicle_count": 1,
        },
    )

    assert response.status_code == 200
    routes = response.json()
    assert len(routes) == 1
    assert [item["item_id"] for item in routes[0]["optimized_items"]] == ["A", "B", "C"]


def test_compare_endpoint_flags_moved_stops(client):
    a, b, c = _item("A"), _item("B"), _item("C")
    response = client.post(
        "/api/v1/itineraries/optimize/compare",
        json={
            "original_items": [a, b, c],
            "result": {"optimized_items": [c, a, b], "total_distance": 1000, "total_duration": 600},
        },
    )

    assert response.status_code == 200
    assert [stop["moved"] for stop in response.json()["stops"]] == [True, True, True]


def test_compare_endpoint_rejects_duplicate_ids(client):
    a = _item("A")
    response = client.post(
        "/api/v1/itineraries/optimize/compare",
        json={"original_items": [a, a], "result": {"optimized_items": [a], "total_distance": 0, "total_duration": 0}},
    )

    assert response.status_code == 422


def test_itinerary_distances_profile_follows_stop_transport_method(client, monkeypatch):
    seen: list[str] = []
    real = distances_api.compute_itinerary_distances

    async def recording(items, *, profile, client=None):
        seen.append(profile)
        return await real(items, profile=profile)

    monkeypatch.setattr(distances_api, "compute_itinerary_distances", recording)
    items = [_item("A", 10.7756, 106.7019), _item("B", 10.7626, 106.6822), _item("C", 10.7769, 106.7009)]
    items[0]["transport_method"] = "walking"
    items[1]["transport_method"] = "bike"

    response = client.post("/api/v1/itineraries/distances", json={"items": items})

    assert response.status_code == 200
    assert seen == ["walk"]
    assert [segment["icon"] for segment in response.json()["segments"]] == ["🚶", "🚴"]


def test_itinerary_distances_explicit_profile_wins(client, monkeypatch):
    seen: list[str] = []

    async def recording(items, *, profile, client=None):
        seen.append(profile)
        return {}, 0.0, 0.0

    monkeypatch.setattr(distances_api, "compute_itinerary_distances", recording)
    items = [_item("A", 10.7, 106.6), _item("B", 10.8, 106.7)]
    items[0]["transport_method"] = "walking"

    response = client.post("/api/v1/itineraries/distances", json={"items": items, "profile": "truck"})

    assert response.status_code == 200
    assert seen == ["truck"]
