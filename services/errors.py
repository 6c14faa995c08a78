"""
Rejections raised by the geofence attendance engine.

Each error is an HTTPException so FastAPI renders it directly, with a
structured detail the member app can turn into an actionable message:

    {"code": "outside_fence", "message": "...", "distance": 152, "required_radius": 100}
"""

from typing import Any

from fastapi import HTTPException, status


class GeofenceAttendanceError(HTTPException):
    code = "geofence_error"
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(
            status_code=self.status_code_default,
            detail={"code": self.code, "message": message, **details},
        )

    def __str__(self) -> str:
        return self.message


# --- Caller errors ---


class InvalidInput(GeofenceAttendanceError):
    code = "invalid_input"
    status_code_default = status.HTTP_400_BAD_REQUEST


class ValidationError(GeofenceAttendanceError):
    """Administrator configuration rejected."""

    code = "validation_error"
    status_code_default = status.HTTP_400_BAD_REQUEST


# --- Fraud and business-rule rejections ---


class FraudRejected(GeofenceAttendanceError):
    code = "fraud_rejected"
    status_code_default = status.HTTP_403_FORBIDDEN


class OutsideFence(GeofenceAttendanceError):
    code = "outside_fence"
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(
        self,
        distance: float,
        required_radius: float,
        shape: str = "circular",
        approximate: bool = False,
    ):
        self.distance = distance
        self.required_radius = required_radius
        if approximate:
            # Polygon fences: centroid distance against the bounding circle
            message = (
                "Your location is outside the gym's geofence area. "
                f"You are about {round(distance)}m from its center, "
                f"which covers roughly {round(required_radius)}m."
            )
        else:
            message = (
                f"You are {round(distance)}m away from the gym. "
                f"Must be within {round(required_radius)}m."
            )
        super().__init__(
            message,
            distance=round(distance),
            required_radius=round(required_radius),
            shape=shape,
            approximate=approximate,
        )


class OutsideOperatingHours(GeofenceAttendanceError):
    code = "outside_operating_hours"
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(self, current_time: str, window: str):
        super().__init__(
            f"Attendance can only be marked during gym operating hours ({window}).",
            current_time=current_time,
            operating_hours=window,
        )


class NoActiveMembership(GeofenceAttendanceError):
    code = "no_active_membership"
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(self, as_of: str):
        super().__init__(
            "No active membership found. Please renew your membership.",
            as_of=as_of,
        )


class MinimumStayNotMet(GeofenceAttendanceError):
    code = "minimum_stay_not_met"
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(self, required_minutes: int, actual_minutes: int):
        self.required_minutes = required_minutes
        self.actual_minutes = actual_minutes
        super().__init__(
            f"Minimum stay time is {required_minutes} minutes. "
            f"Current duration: {actual_minutes} minutes.",
            required_minutes=required_minutes,
            duration_in_minutes=actual_minutes,
        )


# --- State not found ---


class GymNotFound(GeofenceAttendanceError):
    code = "gym_not_found"
    status_code_default = status.HTTP_404_NOT_FOUND

    def __init__(self, gym_id: str):
        super().__init__(f"Gym '{gym_id}' not found.", gym_id=gym_id)


class FenceNotConfigured(GeofenceAttendanceError):
    code = "fence_not_configured"
    status_code_default = status.HTTP_404_NOT_FOUND


class NoEntryRecord(GeofenceAttendanceError):
    code = "no_entry_record"
    status_code_default = status.HTTP_404_NOT_FOUND


class LocationStatusNotFound(GeofenceAttendanceError):
    code = "location_status_not_found"
    status_code_default = status.HTTP_404_NOT_FOUND
