from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from rental_hub.config import Settings
from rental_hub.db.store import DocumentStore
from rental_hub.db.sql_store import SqlDocumentStore


def create_store_engine(db_url: str) -> AsyncEngine:
    if not db_url:
        raise RuntimeError("Missing required setting: RENTAL_HUB_DB_URL")
    connect_args = {}
    if db_url.startswith("sqlite"):
        # Writers queue on the database lock instead of failing fast.
        connect_args["timeout"] = 30
    return create_async_engine(
        db_url,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


async def open_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "firestore":
        from rental_hub.db.firestore_store import FirestoreDocumentStore
        from rental_hub.firebase_config import init_firebase_app

        return FirestoreDocumentStore(init_firebase_app(settings))

    store = SqlDocumentStore(create_store_engine(settings.db_url))
    if settings.create_tables:
        await store.create_tables()
    return store
