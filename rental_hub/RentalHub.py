import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from rental_hub import __version__
from rental_hub.config import configure_logging, load_cors_settings, load_settings
from rental_hub.db.deps import get_rentals, get_store, get_verifier
from rental_hub.db.session import open_store
from rental_hub.db.store import DocumentStore
from rental_hub.schemas.equipment import EquipmentUpsert
from rental_hub.schemas.rentals import CancelRentalRequest, CreateRentalDto, RentalStatusUpdate
from rental_hub.services.equipment_service import (
    create_equipment as create_equipment_record,
    delete_equipment as delete_equipment_record,
    get_equipment as get_equipment_record,
    list_equipment,
    serialize_equipment,
    update_equipment as update_equipment_record,
)
from rental_hub.services.errors import InternalError, RentalHubError
from rental_hub.services.identity_service import (
    FirebaseIdentityVerifier,
    IdentityVerifier,
    StaticTokenVerifier,
    extract_bearer_token,
)
from rental_hub.services.notification_service import LogNotifier
from rental_hub.services.rental_service import LIFECYCLES, RentalStateMachine, serialize_rental
from rental_hub.services.sweeper import ExpirySweeper

HTTP_LOGGER = logging.getLogger("rental_hub.http")
AUTH_LOGGER = logging.getLogger("rental_hub.auth")
CORS_ALLOW_ORIGINS, CORS_ALLOW_CREDENTIALS = load_cors_settings()


def _build_verifier(settings) -> IdentityVerifier:
    if settings.auth_backend == "static":
        AUTH_LOGGER.warning("Static token verifier enabled users=%s", len(settings.static_tokens or {}))
        return StaticTokenVerifier(settings.static_tokens or {})
    from rental_hub.firebase_config import init_firebase_app

    return FirebaseIdentityVerifier(init_firebase_app(settings))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level)
    verifier = _build_verifier(settings)
    store = await open_store(settings)
    notifier = LogNotifier()
    sweeper = ExpirySweeper(
        store,
        notifier=notifier,
        interval=settings.sweep_interval,
        initial_delay=settings.sweep_initial_delay,
    )

    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.store = store
    app.state.verifier = verifier
    app.state.rentals = RentalStateMachine(store, LIFECYCLES[settings.lifecycle], notifier)
    app.state.sweeper = sweeper
    if settings.sweep_enabled:
        sweeper.start()
    logging.getLogger("rental_hub").info(
        "Rental hub started store=%s lifecycle=%s auth=%s",
        settings.store_backend,
        settings.lifecycle,
        settings.auth_backend,
    )
    try:
        yield
    finally:
        await sweeper.stop()
        await store.close()
        await verifier.close()


app = FastAPI(title="Rental Hub", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(CORS_ALLOW_ORIGINS),
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    HTTP_LOGGER.info(
        "%s %s status=%s duration_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


@app.exception_handler(RentalHubError)
async def handle_domain_error(request: Request, exc: RentalHubError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg") or "Invalid request."
    return JSONResponse(status_code=400, content={"error": f"{field}: {message}" if field else message})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    HTTP_LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


async def get_current_user(
    authorization: str | None = Header(None),
    verifier: IdentityVerifier = Depends(get_verifier),
) -> str:
    token = extract_bearer_token(authorization)
    return await verifier.verify(token)


@app.get("/api/health")
async def healthcheck(request: Request, store: DocumentStore = Depends(get_store)):
    try:
        await store.ping()
    except Exception as exc:
        HTTP_LOGGER.warning("Health check failed: %s", exc)
        raise HTTPException(status_code=503, detail="store_unavailable") from exc
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "version": __version__,
    }


@app.get("/api/equipment")
async def get_equipment(
    category: str | None = Query(None),
    min_price: float | None = Query(None, alias="minPrice"),
    max_price: float | None = Query(None, alias="maxPrice"),
    store: DocumentStore = Depends(get_store),
):
    return await list_equipment(store, category, min_price, max_price)


@app.get("/api/equipment/{equipment_id}")
async def get_equipment_item(equipment_id: str, store: DocumentStore = Depends(get_store)):
    return serialize_equipment(await get_equipment_record(store, equipment_id))


@app.post("/api/equipment", status_code=201)
async def create_equipment(
    payload: EquipmentUpsert,
    user_id: str = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    created = await create_equipment_record(store, user_id, payload.model_dump(exclude_unset=True))
    return serialize_equipment(created)


@app.put("/api/equipment/{equipment_id}")
async def update_equipment(
    equipment_id: str,
    payload: EquipmentUpsert,
    user_id: str = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    updated = await update_equipment_record(store, equipment_id, user_id, payload.model_dump(exclude_unset=True))
    return serialize_equipment(updated)


@app.delete("/api/equipment/{equipment_id}")
async def delete_equipment(
    equipment_id: str,
    user_id: str = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    await delete_equipment_record(store, equipment_id, user_id)
    return {"message": "Equipment deleted", "id": equipment_id}


@app.get("/api/rentals")
async def get_rental_list(
    min_price: float | None = Query(None, alias="minPrice"),
    max_price: float | None = Query(None, alias="maxPrice"),
    status: str | None = Query(None),
    user_id: str = Depends(get_current_user),
    rentals: RentalStateMachine = Depends(get_rentals),
):
    return {"data": await rentals.list_rentals(user_id, min_price, max_price, status)}


@app.post("/api/rentals", status_code=201)
async def create_rental(
    payload: CreateRentalDto,
    user_id: str = Depends(get_current_user),
    rentals: RentalStateMachine = Depends(get_rentals),
):
    created = await rentals.create_rental(user_id, payload.equipmentId, payload.quantity, payload.durationDays)
    return serialize_rental(created, user_id)


@app.put("/api/rentals/{rental_id}/status")
async def update_rental_status(
    rental_id: str,
    payload: RentalStatusUpdate,
    user_id: str = Depends(get_current_user),
    rentals: RentalStateMachine = Depends(get_rentals),
):
    updated = await rentals.transition(
        rental_id,
        payload.status,
        user_id,
        payload.model_dump(exclude={"status"}, exclude_none=True),
    )
    return serialize_rental(updated, user_id)


@app.delete("/api/rentals/{rental_id}")
async def cancel_rental(
    rental_id: str,
    payload: CancelRentalRequest | None = None,
    user_id: str = Depends(get_current_user),
    rentals: RentalStateMachine = Depends(get_rentals),
):
    reason = payload.reason if payload else None
    cancelled = await rentals.cancel_rental(rental_id, user_id, reason)
    return {"message": "Rental cancelled", "rental": serialize_rental(cancelled, user_id)}
