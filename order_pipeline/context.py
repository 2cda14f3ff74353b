"""
Order Pipeline — process-wide clients

Built once at application start-up and closed on shutdown. Holds
connections only, never business state.
"""

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .commands import OrderTransactionProcessor
from .config import Settings
from .idempotency import IdempotencyStore
from .notifications import Mailer
from .publisher import QueuePublisher
from .signature import SignatureVerifier


class PipelineContext:
    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        redis: aioredis.Redis,
        http: httpx.AsyncClient,
    ):
        self.settings = settings
        self.engine = engine
        self.redis = redis
        self.http = http

        self.session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self.publisher = QueuePublisher(http, settings)
        self.store = IdempotencyStore(redis, settings.dedup_ttl_seconds)
        self.verifier = SignatureVerifier(
            settings.current_signing_key, settings.next_signing_key, settings.dev_mode
        )
        self.processor = OrderTransactionProcessor(self.session_factory, self.publisher)
        self.mailer = Mailer(settings)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineContext":
        return cls(
            settings,
            create_async_engine(settings.database_url, echo=False, pool_pre_ping=True),
            aioredis.from_url(settings.redis_url, decode_responses=True),
            httpx.AsyncClient(timeout=10.0),
        )

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.redis.aclose()
        await self.engine.dispose()
