from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.services.cache import RedisCache, get_cache
from app.utils.settings import get_settings

router = APIRouter(tags=["health"])


def _check_cache_ready() -> dict[str, Any]:
    cache = get_cache()
    if not isinstance(cache, RedisCache):
        return {"status": "ready", "backend": "memory"}
    try:
        cache.client.ping()
        return {"status": "ready", "backend": "redis"}
    except Exception as exc:  # noqa: BLE001
        return {"status": "unready", "backend": "redis", "detail": str(exc)}


def _check_distance_provider_ready() -> dict[str, Any]:
    settings = get_settings()
    if settings.trackasia_mock_mode:
        return {"status": "skipped", "detail": "TrackAsia API key not configured; using straight-line estimates"}
    return {
        "status": "ready",
        "base_url": settings.trackasia_base_url,
        "detail": "TrackAsia client/config is available",
    }


def _build_readiness_report() -> dict[str, Any]:
    checks = {
        "cache": _check_cache_ready(),
        "distance_provider": _check_distance_provider_ready(),
    }
    ready = all(check["status"] in {"ready", "skipped"} for check in checks.values())
    return {"status": "ok" if ready else "degraded", "ready": ready, "checks": checks}


@router.get("/api/v1/health")
def health() -> dict[str, Any]:
    settings = get_settings()
    return {
        "status": "ok",
        "env": settings.app_env,
        "distance_mock_mode": bool(settings.trackasia_mock_mode),
        "default_profile": settings.distance_default_profile,
    }


@router.get("/health/live")
def health_live() -> dict[str, Any]:
    settings = get_settings()
    return {"status": "ok", "env": settings.app_env}


@router.get("/health/ready")
def health_ready() -> JSONResponse:
    report = _build_readiness_report()
    status_code = 200 if report["ready"] else 503
    return JSONResponse(status_code=status_code, content=report)
