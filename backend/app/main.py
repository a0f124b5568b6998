from __future__ import annotations

import logging
import traceback
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import distances, health, optimization
from app.providers.trackasia import TrackAsiaError, close_trackasia_client
from app.utils.errors import AppError, log_error
from app.utils.settings import get_settings


settings = get_settings()
app = FastAPI(title="Itinerary Travel Distance API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    logging.getLogger("app").setLevel(str(get_settings().log_level).upper())


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await close_trackasia_client()


@app.middleware("http")
async def structured_error_middleware(request: Request, call_next):
    correlation_id = str(uuid.uuid4())
    request.state.correlation_id = correlation_id

    try:
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response
    except AppError as exc:
        log_error(exc.stage, exc.message, details=exc.details, correlation_id=correlation_id)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error_code": exc.error_code,
                "message": exc.message,
                "details": exc.details,
                "correlation_id": correlation_id,
            },
            headers={"X-Correlation-ID": correlation_id},
        )
    except TrackAsiaError as exc:
        details = {"code": exc.code, "status_code": exc.status_code, **exc.details}
        log_error("DISTANCE_MATRIX", str(exc), details=details, correlation_id=correlation_id)
        return JSONResponse(
            status_code=502,
            content={
                "error_code": "DISTANCE_MATRIX_UNAVAILABLE",
                "message": str(exc),
                "details": details,
                "correlation_id": correlation_id,
            },
            headers={"X-Correlation-ID": correlation_id},
        )
    except Exception as exc:  # noqa: BLE001
        log_error(
            "API",
            str(exc),
            details={"traceback": traceback.format_exc()},
            correlation_id=correlation_id,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "INTERNAL_ERROR",
                "message": "Unexpected server error",
                "details": {"type": type(exc).__name__},
                "correlation_id": correlation_id,
            },
            headers={"X-Correlation-ID": correlation_id},
        )


app.include_router(health.router)
app.include_router(distances.router)
app.include_router(optimization.router)
