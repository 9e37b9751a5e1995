from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging

import config  # noqa: F401  (loads .env)

logger = logging.getLogger(__name__)

# Server selection timeout keeps startup from hanging on an unreachable cluster
SERVER_SELECTION_TIMEOUT_MS = 10000
MAX_POOL_SIZE = 10


class Database:
    """Managed Motor client. Owned by the server lifespan; stores receive get_db()."""
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
            db_name = os.environ.get('DB_NAME', 'entitlements')
            self.client = AsyncIOMotorClient(
                mongo_url,
                tz_aware=True,
                serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
                maxPoolSize=MAX_POOL_SIZE,
            )
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
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    def get_db(self):
        if self.db is None:
            raise RuntimeError("Database is not connected")
        return self.db

    async def _create_indexes(self):
        """Create indexes. Unique indexes back the find-or-create and idempotency invariants."""
        # Accounts - exactly one per normalized email
        await self.db.accounts.create_index("email", unique=True)
        await self.db.accounts.create_index("account_id", unique=True)
        await self.db.accounts.create_index("processor_customer_id", sparse=True)

        # Subscription records - at most one per account
        await self.db.subscriptions.create_index("account_id", unique=True)
        await self.db.subscriptions.create_index("processor_subscription_id", sparse=True)
        await self.db.subscriptions.create_index("processor_customer_id", sparse=True)
        await self.db.subscriptions.create_index([("status", 1), ("updated_at", 1)])

        # Stripe webhook idempotency - duplicate event_id must not apply twice
        await self.db.webhook_events.create_index("event_id", unique=True)

        # Audit log - per-account timeline
        await self.db.audit_logs.create_index([("account_id", 1), ("timestamp", -1)])
        await self.db.audit_logs.create_index("action")
        logger.info("MongoDB indexes created/verified")

