import logging

import firebase_admin
from firebase_admin import credentials

from rental_hub.config import Settings

FIREBASE_LOGGER = logging.getLogger("rental_hub.firebase")
APP_NAME = "rental-hub"


def init_firebase_app(settings: Settings) -> firebase_admin.App:
    """Return the process-wide Firebase app, creating it on first use."""
    try:
        return firebase_admin.get_app(APP_NAME)
    except ValueError:
        pass

    if settings.firebase_project_id and settings.firebase_private_key and settings.firebase_client_email:
        FIREBASE_LOGGER.info("Using Firebase credentials from environment variables")
        cred = credentials.Certificate(
            {
                "type": "service_account",
                "project_id": settings.firebase_project_id,
                "private_key": settings.firebase_private_key,
                "client_email": settings.firebase_client_email,
                "token_uri": "https://oauth2.googleapis.com/token",
            }
        )
    else:
        FIREBASE_LOGGER.info("Using Firebase service account key file %s", settings.firebase_credentials_file)
        cred = credentials.Certificate(settings.firebase_credentials_file)

    options = {"projectId": settings.firebase_project_id} if settings.firebase_project_id else None
    return firebase_admin.initialize_app(cred, options, name=APP_NAME)
