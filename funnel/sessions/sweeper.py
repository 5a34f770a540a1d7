"""
Balayage périodique des sessions expirées.
- Tâche asyncio démarrée par le lifespan (une seule par process)
- Le balayage ne supprime que des enregistrements déjà expirés: sûr en parallèle des lectures/écritures
"""
import asyncio
import logging

from starlette.concurrency import run_in_threadpool

from funnel.sessions.store import SessionStore

logger = logging.getLogger(__name__)


async def sweep_periodically(store: SessionStore, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await run_in_threadpool(store.sweep_expired)
            logger.debug("session sweep done removed=%s", removed)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Erreur session sweep")
