import logging
import os

from dotenv import load_dotenv
from sqlmodel import Session, create_engine

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# Connects app to PostgreSQL database (or any SQLAlchemy URL via DATABASE_URL)


def _database_url() -> str:
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit

    DB_HOST = os.getenv("DB_HOST")
    DB_PORT = os.getenv("DB_PORT", "5432")  # Default PostgreSQL port
    DB_NAME = os.getenv("DB_NAME")
    DB_USER = os.getenv("DB_USER")
    DB_PASSWORD = os.getenv("DB_PASSWORD")
    INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")  # For Cloud SQL Proxy

    required_vars_for_tcp = ["DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD"]
    required_vars_for_socket = ["DB_NAME", "DB_USER", "DB_PASSWORD", "INSTANCE_CONNECTION_NAME"]

    if INSTANCE_CONNECTION_NAME:
        missing_vars = [var for var in required_vars_for_socket if not os.getenv(var)]
        if missing_vars:
            raise ValueError(
                f"Missing required environment variables for Cloud SQL (socket): {', '.join(missing_vars)}"
            )
        # Cloud SQL over a Unix socket
        return (
            f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@/{DB_NAME}"
            f"?host=/cloudsql/{INSTANCE_CONNECTION_NAME}"
        )

    missing_vars = [var for var in required_vars_for_tcp if not os.getenv(var)]
    if missing_vars:
        raise ValueError(
            f"Missing required environment variables for TCP: {', '.join(missing_vars)}"
        )
    return f"postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"


DATABASE_URL = _database_url()

# SQLite (local runs, tests) needs cross-thread access for FastAPI's threadpool
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Note: echo=True will log all SQL statements, set to False in production
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)


# Session per request, for FastAPI dependency injection
def get_session():
    with Session(engine) as session:
        yield session
