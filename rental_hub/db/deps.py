from fastapi import Request

from rental_hub.db.store import DocumentStore
from rental_hub.services.identity_service import IdentityVerifier
from rental_hub.services.rental_service import RentalStateMachine


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_verifier(request: Request) -> IdentityVerifier:
    return request.app.state.verifier


def get_rentals(request: Request) -> RentalStateMachine:
    return request.app.state.rentals
