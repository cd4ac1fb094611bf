import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import redis.asyncio as aioredis

from learnchat.config import Settings, get_settings
from learnchat.database import create_all_tables, create_engine, create_sessionmaker
from learnchat.errors import register_exception_handlers
from learnchat.routers import conversations, gateway, health, messages
from learnchat.services.broadcaster import Broadcaster
from learnchat.services.pubsub import InMemoryPubSub, RedisPubSub
from learnchat.services.rate_limiter import MemoryWindowStore, RateLimiter, RedisWindowStore
from learnchat.utils.logging_config import setup_logging
from learnchat.ws import ConnectionManager

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/messaging"


def _build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        uses_redis = "redis" in (settings.pubsub_backend, settings.rate_limit_backend)
        if uses_redis and not settings.redis_url:
            raise RuntimeError("REDIS_URL must be set when a redis backend is selected")

        engine = create_engine(settings.database_url, echo=settings.database_echo)
        app.state.engine = engine
        app.state.sessionmaker = create_sessionmaker(engine)
        if settings.database_create_tables:
            await create_all_tables(engine)

        app.state.redis = None
        if settings.redis_url:
            app.state.redis = aioredis.from_url(settings.redis_url)
            logger.info("Redis client configured")

        if settings.pubsub_backend == "redis":
            pubsub = RedisPubSub(app.state.redis)
        else:
            pubsub = InMemoryPubSub()
        app.state.pubsub = pubsub

        if settings.rate_limit_backend == "redis":
            store = RedisWindowStore(app.state.redis)
        else:
            store = MemoryWindowStore()
        app.state.rate_limiter = RateLimiter(
            store,
            limit=settings.message_rate_limit,
            window_seconds=settings.message_rate_window_seconds,
        )

        app.state.broadcaster = Broadcaster(pubsub, timeout=settings.publish_timeout_seconds)
        app.state.gateway = ConnectionManager(
            pubsub,
            app.state.broadcaster,
            app.state.sessionmaker,
            queue_size=settings.ws_queue_size,
        )
        logger.info(f"Messaging started (pubsub={settings.pubsub_backend}, rate limits={settings.rate_limit_backend})")
        yield
        # Shutdown
        await app.state.gateway.close()
        await app.state.rate_limiter.close()
        await pubsub.close()
        if app.state.redis is not None:
            await app.state.redis.aclose()
        await engine.dispose()
        logger.info("Messaging stopped")

    return lifespan


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="LearnChat Messaging API",
        description="Real-time conversations and messages for the e-learning platform",
        version="1.0.0",
        lifespan=_build_lifespan(settings),
    )
    app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(conversations.router, prefix=f"{API_PREFIX}/conversations", tags=["Conversations"])
    app.include_router(messages.router, prefix=f"{API_PREFIX}/messages", tags=["Messages"])
    app.include_router(gateway.router, prefix=API_PREFIX, tags=["Live Sessions"])
    app.include_router(health.router, prefix="/api/v1/health", tags=["Health"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
