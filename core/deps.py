import logging
from typing import Annotated  # Use typing.Annotated for Python 3.9+

from fastapi import Depends, HTTPException, Request, status
from sqlmodel import Session

from core.firebase import verify_id_token
from db.session import get_session
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)

# Standard credentials exception
CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)

# Owners manage every gym; gym admins only the gyms in their token claims
ADMIN_ROLES = ["owner"]
GYM_ADMIN_ROLES = ["gym_admin"]


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return auth_header.split(" ", 1)[1]


def _claims_to_user(decoded: dict) -> dict:
    raw_gyms = decoded.get("gyms") or []
    if isinstance(raw_gyms, str):
        raw_gyms = raw_gyms.split(",")
    gyms = sorted(set(g.strip() for g in raw_gyms if g and g.strip()))

    return {
        "uid": decoded["uid"],
        "name": decoded.get("name", ""),
        "email": decoded.get("email", ""),
        "role": decoded.get("role", "member"),
        "gyms": gyms,
    }


# Member identity, taken from the Firebase ID token
async def get_current_user(request: Request) -> dict:
    token = _bearer_token(request)

    try:
        decoded = verify_id_token(token)
    except Exception:
        logger.warning("[AUTH] Rejected invalid or expired token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token"
        )

    if not decoded.get("uid"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token did not contain uid"
        )
    return _claims_to_user(decoded)


# Basic check for admin endpoints: any valid token, generic 401 on failure
async def get_current_user_basic_auth(request: Request) -> dict:
    try:
        token = _bearer_token(request)
        decoded = verify_id_token(token)
    except Exception:
        raise CREDENTIALS_EXCEPTION
    if not decoded.get("uid"):
        raise CREDENTIALS_EXCEPTION
    return _claims_to_user(decoded)


async def require_admin_role(
    current_user: Annotated[dict, Depends(get_current_user_basic_auth)]
) -> dict:
    if current_user.get("role") not in ADMIN_ROLES + GYM_ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User doesn't have sufficient privileges for this action",
        )
    return current_user


# Path-scoped check: the admin must manage the gym in the URL
async def require_gym_admin(
    gym_id: str,
    current_user: Annotated[dict, Depends(require_admin_role)],
) -> dict:
    if current_user["role"] in ADMIN_ROLES:
        return current_user
    if gym_id not in current_user.get("gyms", []):
        logger.warning("[AUTH] User %s denied access to gym %s", current_user["uid"], gym_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to manage this gym",
        )
    return current_user


def get_notifier(session: Session = Depends(get_session)) -> NotificationService:
    return NotificationService(session)
