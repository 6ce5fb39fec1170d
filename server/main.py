"""FastAPI server for the Value Cards game."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
import redis.asyncio as redis

from config import config
from logging_config import setup_logging
from middleware.request_id import RequestIDMiddleware
from routers.health import router as health_router, set_health_dependencies
from routers.rooms import router as rooms_router, ws_router as rooms_ws_router, set_room_services
from services.card_service import CardService
from services.phase_service import PhaseService
from stores.entity_store import EntityStore, close_entity_store, set_entity_store
from stores.memory_store import MemoryEntityStore
from stores.pubsub import GamePubSub, LocalPubSub, close_pubsub, set_pubsub

# Configure logging based on environment
setup_logging(
    level=config.LOG_LEVEL,
    environment=config.ENVIRONMENT,
)
logger = logging.getLogger(__name__)


# =============================================================================
# Store & Change Feed (initialized in lifespan)
# =============================================================================

_redis_client = None


async def _init_store() -> EntityStore:
    """PostgreSQL store when configured, in-memory otherwise."""
    if not config.POSTGRES_URL:
        logger.warning("POSTGRES_URL not configured - rooms are kept in memory only")
        return MemoryEntityStore()

    from stores.postgres_store import PostgresEntityStore

    store = await PostgresEntityStore.create(config.POSTGRES_URL)
    await store.initialize_schema()
    logger.info("PostgreSQL entity store initialized")
    return store


async def _init_feed() -> LocalPubSub:
    """Redis change feed when configured, in-process otherwise."""
    global _redis_client
    if config.REDIS_URL:
        try:
            _redis_client = redis.from_url(config.REDIS_URL, decode_responses=False)
            await _redis_client.ping()
            logger.info("Redis client connected")
            return GamePubSub(_redis_client, server_id=config.SERVER_ID)
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e} - using in-process change feed")
            _redis_client = None
    return LocalPubSub(server_id=config.SERVER_ID)


async def _shutdown_services() -> None:
    """Gracefully shut down the change feed and the store."""
    global _redis_client

    await close_pubsub()
    await close_entity_store()

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for async service initialization."""
    try:
        store = await _init_store()
    except Exception as e:
        logger.error(f"Failed to initialize entity store: {e}")
        raise
    set_entity_store(store)

    feed = await _init_feed()
    await feed.start()
    set_pubsub(feed)
    store.add_listener(feed.on_store_change)

    card_service = CardService(store, replenish_target=config.rules.REPLENISH_TARGET)
    phase_service = PhaseService(
        store,
        voting_duration=config.timing.VOTING_DURATION_SECONDS,
        quorum_ratio=config.rules.RESONANCE_QUORUM_RATIO,
        room_code_length=config.ROOM_CODE_LENGTH,
    )
    set_room_services(store, card_service, phase_service, feed)

    set_health_dependencies(
        db_pool=getattr(store, "pool", None),
        redis_client=_redis_client,
        entity_store=store,
    )

    logger.info(
        f"Value Cards server started (environment={config.ENVIRONMENT}, "
        f"store={type(store).__name__}, feed={type(feed).__name__})"
    )

    yield

    logger.info("Shutdown initiated...")
    store.remove_listener(feed.on_store_change)
    set_room_services(None, None, None, None)
    await _shutdown_services()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Value Cards",
    debug=config.DEBUG,
    version="1.0.0",
    lifespan=lifespan,
)

# Request ID middleware (outermost - generates/propagates request IDs)
app.add_middleware(RequestIDMiddleware)

app.include_router(rooms_router)
app.include_router(rooms_ws_router)
app.include_router(health_router)


def run():
    """Run the server using uvicorn."""
    import uvicorn

    logger.info(f"Starting Value Cards server on {config.HOST}:{config.PORT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
