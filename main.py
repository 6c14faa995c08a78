import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import SQLModel

import models  # noqa: F401  Ensure every table is known by SQLModel for table creation
from api.attendance_settings_routes import router as attendance_settings_router
from api.geofence_attendance_routes import router as geofence_attendance_router
from api.geofence_config_routes import router as geofence_config_router
from api.location_status_routes import admin_router as admin_location_status_router
from api.location_status_routes import router as location_status_router
from db.session import engine

# This file is the control center of the whole application

# Load environment variables from .env file, if it exists
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# Default values can be provided if the env var is not set
DEV_DOMAIN = os.getenv("DEV_DOMAIN", "http://localhost:5173")
PRODUCTION_DOMAIN = os.getenv("PRODUCTION_DOMAIN")

# Construct the list of allowed origins, always including both dev and production
allowed_origins_list = [
    DEV_DOMAIN,
    PRODUCTION_DOMAIN,
    "http://localhost:3000",  # Additional fallback for React dev
    "http://127.0.0.1:5173",  # Additional fallback for Vite dev
]

# Remove any None values and duplicates
allowed_origins_list = sorted(set(origin for origin in allowed_origins_list if origin))

logger.info("CORS: Allowing origins: %s", allowed_origins_list)


# When We Start, Create the DB Tables if they don't exist
@asynccontextmanager
async def lifespan(app: FastAPI):
    SQLModel.metadata.create_all(engine)

    # (would do shutdown cleanup here if needed)
    yield


# Starts Fast API Up; Init
app = FastAPI(title="Geofence Attendance", lifespan=lifespan)

# Allow requests from the member app & admin dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(geofence_config_router, prefix="/geofence", tags=["Admin", "Geofence"])
app.include_router(
    attendance_settings_router, prefix="/attendance-settings", tags=["Attendance Settings"]
)
app.include_router(
    geofence_attendance_router, prefix="/geofence-attendance", tags=["Geofence Attendance"]
)
app.include_router(location_status_router, prefix="/member", tags=["Member", "Location Status"])
app.include_router(
    admin_location_status_router,
    prefix="/admin/location-status",
    tags=["Admin", "Location Status"],
)


@app.get("/health", tags=["Health"])
def health_check():
    return {"status": "ok"}
