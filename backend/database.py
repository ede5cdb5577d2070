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
            # tz_aware so expires_at comes back comparable with the service clock
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

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
        """Create MongoDB indexes for contract lookups and the receivable outbox."""
        try:
            # Contracts - token is the sole public credential and must be unique
            await self.db.contracts.create_index("token", unique=True)
            await self.db.contracts.create_index("id", unique=True)
            await self.db.contracts.create_index([("owner_id", 1), ("created_at", -1)])
            await self.db.contracts.create_index([("lead_id", 1), ("status", 1)], sparse=True)

            # Templates and business settings
            await self.db.contract_templates.create_index("id", unique=True)
            await self.db.contract_templates.create_index([("owner_id", 1), ("created_at", -1)])
            await self.db.business_settings.create_index("owner_id", unique=True)

            # Receivables - one schedule per contract
            try:
                await self.db.receivables.create_index(
                    [("contract_id", 1), ("sequence_number", 1)],
                    unique=True
                )
            except Exception:
                pass  # Index may already exist
            await self.db.receivables.create_index([("owner_id", 1), ("due_date", 1)])

            # Receivable outbox - idempotent by contract
            try:
                await self.db.receivable_jobs.create_index("contract_id", unique=True)
            except Exception:
                pass
            await self.db.receivable_jobs.create_index([("status", 1), ("next_run_at", 1)])

            # Owner notifications
            await self.db.notifications.create_index([("owner_id", 1), ("created_at", -1)])

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
