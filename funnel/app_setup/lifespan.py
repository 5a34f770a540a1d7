"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Initialise FastAPILimiter (Redis) avec options de test (fakeredis).
- Construit le Container du funnel (store de sessions, passerelle, services) si absent.
- Démarre les tâches de fond: balayage des sessions expirées, consommateur du bus d'événements.
- Variables d'environnement supportées:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: désactive complètement le rate limiting (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: active un fallback local si l'init échoue
"""
import asyncio
import os
import logging
import redis.asyncio as aioredis
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from funnel import config
from funnel.container import Container
from funnel.sessions.sweeper import sweep_periodically


async def init_rate_limiter(app: FastAPI) -> None:
    """
    Configure le rate limiting et gère les fallbacks.
    - En cas d'échec de Redis et sans fallback, le rate limiting est désactivé proprement.
    """
    logger = logging.getLogger("uvicorn.error")
    try:
        if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
            app.state.rate_limit_enabled = False
            logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
            return

        use_fake = os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1"
        if use_fake:
            from fakeredis.aioredis import FakeRedis  # tests only
            r = FakeRedis(decode_responses=True)
        else:
            redis_url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
            r = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)

        await FastAPILimiter.init(r)
        app.state.rate_limit_enabled = True
        logger.info("Rate limiting enabled")
    except Exception as e:
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            app.state.rate_limit_enabled = True
            logger.warning("Rate limiting falling back to local in-memory due to init error: %s", e)
        else:
            app.state.rate_limit_enabled = False
            logger.warning("Rate limiting disabled due to init error: %s", e)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Démarrage: rate limiting, container, tâches de fond.
    Arrêt: annulation des tâches puis fermeture du client HTTP de la passerelle.
    """
    logger = logging.getLogger("uvicorn.error")
    await init_rate_limiter(app)

    container = getattr(app.state, "container", None)
    if container is None:
        container = Container.from_config()
        app.state.container = container
    logger.info(
        "Funnel ready: sessions=%s orders=%s gateway_configured=%s",
        container.store.backend_name, container.orders.backend_name, bool(config.NMI_SECURITY_KEY),
    )

    tasks = [
        asyncio.create_task(sweep_periodically(container.store, config.SESSION_SWEEP_INTERVAL_SECONDS)),
        asyncio.create_task(container.bus.consume(container.reconciliation)),
    ]
    app.state.background_tasks = tasks
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        container.close()
        logger.info("Funnel stopped")
