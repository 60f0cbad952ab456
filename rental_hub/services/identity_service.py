from __future__ import annotations

import asyncio
import logging

import firebase_admin
from firebase_admin import auth as firebase_auth

from rental_hub.services.errors import Unauthorized

AUTH_LOGGER = logging.getLogger("rental_hub.auth")


def extract_bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Authorization required.")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise Unauthorized("Authorization required.")
    return token


class IdentityVerifier:
    async def verify(self, token: str) -> str:
        """Return the stable user id behind ``token`` or raise ``Unauthorized``."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class StaticTokenVerifier(IdentityVerifier):
    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    async def verify(self, token: str) -> str:
        uid = self._tokens.get(token)
        if not uid:
            AUTH_LOGGER.warning("Token rejected reason=unknown_static_token")
            raise Unauthorized("Invalid token.")
        return uid


class FirebaseIdentityVerifier(IdentityVerifier):
    def __init__(self, app):
        self._app = app

    async def verify(self, token: str) -> str:
        try:
            decoded = await asyncio.to_thread(firebase_auth.verify_id_token, token, self._app)
        except Exception as exc:
            AUTH_LOGGER.warning("Token rejected reason=%s", type(exc).__name__)
            raise Unauthorized("Invalid token.") from exc
        uid = decoded.get("uid")
        if not uid:
            raise Unauthorized("Invalid token.")
        return uid

    async def close(self) -> None:
        try:
            firebase_admin.get_app(self._app.name)
        except ValueError:
            # Already deleted by the Firestore store.
            return
        firebase_admin.delete_app(self._app)
        AUTH_LOGGER.info("Firebase app %s deleted", self._app.name)
