from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from redis.asyncio import from_url
import structlog

from gatekeeper.config import settings
from gatekeeper.api.middleware import RequestContextMiddleware, rate_limit_exceeded_handler
from gatekeeper.api.routes import router
from gatekeeper.core.engine import AlgorithmEngine
from gatekeeper.core.exceptions import RateLimitExceeded
from gatekeeper.core.hotspot import HotspotDetector
from gatekeeper.core.limiter import limiter
from gatekeeper.core.logging import setup_logging
from gatekeeper.core.statistics import StatisticsAggregator
from gatekeeper.core.storage.base import StorageBackend
from gatekeeper.core.storage.redis import RedisBackend

logger = structlog.get_logger()


def create_app(backend: StorageBackend | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        backend: Storage to use instead of Redis (tests, local runs).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifecycle manager.
        Handles storage startup, limiter wiring and graceful shutdown.
        """
        setup_logging()

        # 1. Initialize Infrastructure
        store = backend
        if store is None:
            redis_client = from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            store = RedisBackend(redis_client)

        # 2. Initialize Core Logic (Dependency Injection)
        prefix = settings.rate_limit_key_prefix
        engine = AlgorithmEngine(store, key_prefix=prefix)
        detector = HotspotDetector(store, prefix=prefix)
        aggregator = StatisticsAggregator(
            store,
            prefix=prefix,
            flush_interval=settings.stats_flush_interval,
            queue_size=settings.stats_queue_size,
            hourly_retention_days=settings.stats_hourly_retention_days,
            daily_retention_days=settings.stats_daily_retention_days,
            high_frequency_threshold=settings.stats_high_frequency_threshold,
        )
        aggregator.start()
        limiter.configure(engine, aggregator=aggregator, detector=detector, settings=settings)

        app.state.backend = store
        app.state.engine = engine
        app.state.detector = detector
        app.state.aggregator = aggregator

        logger.info("gatekeeper_started", strategy=settings.rate_limit_strategy.value)
        yield

        # 3. Cleanup
        await aggregator.shutdown()
        limiter.unconfigure()
        if backend is None:
            await store.close()
        logger.info("gatekeeper_stopped")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.include_router(router)
    return app


app = create_app()
