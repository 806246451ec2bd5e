import logging
from typing import Awaitable, Callable, Optional, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel, ReturnDocument
from pymongo.errors import PyMongoError

from config import settings
from core.result import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

client: AsyncIOMotorClient = None
_db_instance = None


class _DbProxy:
    """
    Proxy transparent vers l'instance Motor.
    Permet aux services de faire `from database import db` AVANT connect_db().
    db.collection → délégué à _db_instance.collection au moment de l'appel.
    """
    def __getattr__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return getattr(_db_instance, name)

    def __getitem__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return _db_instance[name]


db = _DbProxy()


async def connect_db():
    global client, _db_instance
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000,
        tz_aware=True,
    )
    _db_instance = client[settings.DB_NAME]
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    try:
        await create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")


async def close_db():
    global client
    if client:
        client.close()
        logger.info("MongoDB connection closed")


def session_kwargs(session) -> dict:
    """Arguments à passer aux opérations Motor : la session seulement si une transaction est ouverte."""
    return {"session": session} if session is not None else {}


async def update_guarded(collection, query: dict, update: dict, session=None, upsert: bool = False) -> Optional[dict]:
    """
    find_one_and_update qui renvoie le document après écriture, sans `_id`,
    ou None si aucun document ne satisfait la garde du filtre.
    """
    doc = await collection.find_one_and_update(
        query,
        update,
        upsert=upsert,
        return_document=ReturnDocument.AFTER,
        **session_kwargs(session),
    )
    if doc is not None:
        doc.pop("_id", None)
    return doc


async def run_in_transaction(
    work: Callable[[Optional[object]], Awaitable[Result[T]]],
) -> Result[T]:
    """
    Exécute `work(session)` dans une transaction multi-documents.

    - Result en succès → commit
    - Result en échec ou exception → abort, rien n'est écrit
    - TransientTransactionError → on rejoue toute l'unité (MONGO_TRANSACTION_RETRIES fois)

    Si MONGO_TRANSACTIONS est désactivé (serveur standalone, tests), `work` reçoit
    session=None et ne repose que sur ses écritures conditionnelles.
    """
    if not settings.MONGO_TRANSACTIONS or client is None:
        return await work(None)

    attempts = max(1, settings.MONGO_TRANSACTION_RETRIES)
    attempt = 0
    while True:
        attempt += 1
        async with await client.start_session() as session:
            session.start_transaction()
            try:
                result = await work(session)
                if result.ok:
                    await session.commit_transaction()
                else:
                    await session.abort_transaction()
                return result
            except PyMongoError as exc:
                if session.in_transaction:
                    await session.abort_transaction()
                if exc.has_error_label("TransientTransactionError") and attempt < attempts:
                    logger.warning(f"Transaction rejouée ({attempt}/{attempts}) : {exc}")
                    continue
                raise
            except Exception:
                if session.in_transaction:
                    await session.abort_transaction()
                raise


async def create_indexes():
    collections_to_index = {
        "users": [
            IndexModel([("user_id", 1)], unique=True),
            IndexModel([("email", 1)], sparse=True),
            IndexModel([("role", 1)]),
        ],
        "stores": [
            IndexModel([("store_id", 1)], unique=True),
        ],
        "orders": [
            IndexModel([("order_id", 1)], unique=True),
            IndexModel([("buyer.user_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "sub_orders": [
            IndexModel([("sub_order_id", 1)], unique=True),
            IndexModel([("order_id", 1)]),
            IndexModel([("store_id", 1)]),
            IndexModel([("delivery_status", 1)]),
            IndexModel([("delivery_date", 1)]),
            IndexModel([("return_window", 1)]),
        ],
        "wallets": [
            IndexModel([("wallet_id", 1)], unique=True),
            IndexModel([("store_id", 1)], unique=True),
        ],
        "wallet_transactions": [
            IndexModel([("tx_id", 1)], unique=True),
            IndexModel([("wallet_id", 1)]),
            IndexModel([("related_document_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "withdrawal_requests": [
            IndexModel([("request_id", 1)], unique=True),
            IndexModel([("request_number", 1)], unique=True),
            IndexModel([("store_id", 1)]),
            IndexModel([("status", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "notifications": [
            IndexModel([("recipient", 1)]),
            IndexModel([("created_at", 1)]),
        ],
    }

    for collection_name, index_models in collections_to_index.items():
        try:
            await _db_instance[collection_name].create_indexes(index_models)
            logger.info(f"Indexes created for collection: {collection_name}")
        except Exception as e:
            logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

    logger.info("All MongoDB indexes creation attempts completed.")
