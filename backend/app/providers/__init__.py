from app.providers.trackasia import (
    DistanceMatrixResult,
    TrackAsiaClient,
    TrackAsiaError,
    VrpJob,
    VrpRoute,
    VrpSolution,
    VrpStep,
    VrpVehicle,
    close_trackasia_client,
    get_trackasia_client,
)

__all__ = [
    "DistanceMatrixResult",
    "TrackAsiaClient",
    "TrackAsiaError",
    "VrpJob",
    "VrpRoute",
    "VrpSolution",
    "VrpStep",
    "VrpVehicle",
    "close_trackasia_client",
    "get_trackasia_client",
]
