import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.config import Settings, get_settings
from app.ledger.store.mongo import MongoLedgerStore
from app.models.audit_log import AuditLog
from app.models.failed_job import FailedJob
from app.models.user import UserAccount
from app.models.verification_token import VerificationToken

DOCUMENT_MODELS = [
    UserAccount,
    VerificationToken,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def create_client(settings: Settings | None = None) -> AsyncIOMotorClient:
    settings = settings or get_settings()
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return AsyncIOMotorClient(settings.mongodb_uri, tz_aware=False, **kwargs)


async def init_db(client: AsyncIOMotorClient | None = None) -> AsyncIOMotorDatabase:
    """Bind the account documents (Beanie) and return the database."""
    settings = get_settings()
    client = client or create_client(settings)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return database


async def init_ledger_store(client: AsyncIOMotorClient, database: AsyncIOMotorDatabase) -> MongoLedgerStore:
    """Ledger store handle; passed explicitly to the managers, never looked up globally."""
    return await MongoLedgerStore.create(client, database, transactions=get_settings().mongodb_transactions)
