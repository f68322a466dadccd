from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            db_name = os.environ.get('DB_NAME', 'stitchmate')
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes. Unique indexes back the billing invariants."""
        try:
            await self.db.users.create_index("user_id", unique=True)
            await self.db.users.create_index("email", unique=True)
            # Sweep queries
            await self.db.users.create_index([("plan", 1), ("trial_end_date", 1)])

            # One subscription record per user; transaction references are not
            # unique here since a record moves through many of them
            await self.db.subscriptions.create_index("user_id", unique=True)
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index("provider_tx_ref", sparse=True)
            await self.db.subscriptions.create_index("provider_subscription_ref", sparse=True)
            await self.db.subscriptions.create_index([("status", 1), ("due_date", 1)])

            # Webhook idempotency - duplicate event_id must not process twice
            await self.db.billing_events.create_index("event_id", unique=True)

            # A provider payment grants at most one paid period
            await self.db.applied_transactions.create_index("transaction_key", unique=True)

            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")

            # Gated resources
            await self.db.clients.create_index("client_id", unique=True)
            await self.db.clients.create_index("user_id")
            await self.db.projects.create_index("project_id", unique=True)
            await self.db.projects.create_index("user_id")
            await self.db.measurements.create_index("measurement_id", unique=True)
            await self.db.measurements.create_index([("user_id", 1), ("client_id", 1)])
            await self.db.patterns.create_index("pattern_id", unique=True)
            await self.db.patterns.create_index("user_id")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

