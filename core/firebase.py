import json
import logging
import os

import firebase_admin
from dotenv import load_dotenv
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials, messaging

logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()

FCM_TIMEOUT_SECONDS = float(os.getenv("FCM_TIMEOUT_SECONDS", "5"))


def _app_options() -> dict:
    # Bounds every outbound Admin SDK call, including FCM sends
    return {"httpTimeout": FCM_TIMEOUT_SECONDS}


def initialize_firebase() -> firebase_admin.App:
    """Initialize the Firebase Admin SDK once, picking the first credential source available."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    # Method 1: Service Account Key from Environment Variable (production)
    service_account_key_json = os.getenv("FIREBASE_SERVICE_ACCOUNT_KEY")
    if service_account_key_json:
        try:
            cred = credentials.Certificate(json.loads(service_account_key_json))
            app = firebase_admin.initialize_app(cred, _app_options())
            logger.info("Firebase Admin SDK initialized from FIREBASE_SERVICE_ACCOUNT_KEY.")
            return app
        except (json.JSONDecodeError, ValueError) as e:
            logger.error("Error parsing FIREBASE_SERVICE_ACCOUNT_KEY: %s", e)

    # Method 2: Service Account Key File (local development)
    service_account_key_path = os.getenv("FIREBASE_SERVICE_ACCOUNT_KEY_PATH")
    if service_account_key_path and os.path.exists(service_account_key_path):
        cred = credentials.Certificate(service_account_key_path)
        app = firebase_admin.initialize_app(cred, _app_options())
        logger.info("Firebase Admin SDK initialized from service account file.")
        return app

    # Method 3: Application Default Credentials (GOOGLE_APPLICATION_CREDENTIALS or cloud metadata)
    app = firebase_admin.initialize_app(options=_app_options())
    logger.info("Firebase Admin SDK initialized with Application Default Credentials.")
    return app


def verify_id_token(token: str) -> dict:
    initialize_firebase()
    return firebase_auth.verify_id_token(token)


def send_push(topic: str, title: str, body: str, data: dict | None = None) -> str:
    """Send an FCM notification to a topic and return the message id."""
    initialize_firebase()
    message = messaging.Message(
        notification=messaging.Notification(title=title, body=body),
        data={k: str(v) for k, v in (data or {}).items() if v is not None},
        topic=topic,
    )
    return messaging.send(message)
