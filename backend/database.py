from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "wastewater_approval"

# One unique index per field on trials, each built independently
IDENTITY_FIELDS = ("email", "phone")


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            db_name = os.environ.get('DB_NAME', DEFAULT_DB_NAME)
            # tz_aware so trial dates come back comparable with datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")

            await create_indexes(self.db)
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    @property
    def is_connected(self) -> bool:
        return self.db is not None


async def create_indexes(db):
    """Create MongoDB indexes for trials and quotes.

    The unique indexes on trials are the authoritative guard for username
    and identity uniqueness; the service-level lookups are only a fast path.
    """
    try:
        await db.trials.create_index("trial_id", unique=True)
        await db.trials.create_index("trial_account.username", unique=True, sparse=True)
        for field in IDENTITY_FIELDS:
            try:
                await db.trials.create_index(field, unique=True)
            except OperationFailure as e:
                # Fails while legacy duplicates exist; the fast-path lookup still applies
                logger.error(f"Unique {field} index not created on trials: {e}")
        await db.trials.create_index("company_name")
        await db.trials.create_index("status")
        await db.trials.create_index([("status", 1), ("trial_end_date", 1)])
        await db.trials.create_index([("created_at", -1)])

        await db.quotes.create_index("quote_id", unique=True)
        await db.quotes.create_index("company_name")
        await db.quotes.create_index("phone")
        await db.quotes.create_index("email")
        await db.quotes.create_index("status")
        await db.quotes.create_index([("created_at", -1)])
        logger.info("MongoDB indexes created/verified")
    except Exception as e:
        # Indexes may already exist, log but don't fail
        logger.warning(f"Index creation note: {e}")


# Global database instance, owned by the application lifespan
database = Database()


@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.trials.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ.get('DB_NAME', DEFAULT_DB_NAME)
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
