import logging

from fastapi import APIRouter, Depends

from funnel.container import Container, get_container
from funnel.errors import SessionNotFound
from funnel.utils.rate_limit import optional_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sessions", tags=["Sessions API"])

# module funnel.sessions.views
@router.get("/stats")
def sessions_stats(container: Container = Depends(get_container)):
    """Compteurs des sessions actives (par statut, par étape)."""
    return container.store.stats()

@router.get("/{session_id}")
def get_session(session_id: str, container: Container = Depends(get_container)):
    session = container.store.get(session_id)
    if session is None:
        raise SessionNotFound(session_id=session_id)
    return {"success": True, "session": session.to_public_dict()}

@router.delete("/{session_id}", dependencies=[Depends(optional_rate_limit(times=5, seconds=60))])
def delete_session(session_id: str, container: Container = Depends(get_container)):
    if not container.store.delete(session_id):
        raise SessionNotFound(session_id=session_id)
    logger.info("sessions.deleted id=%s", session_id)
    return {"success": True, "deleted": session_id}
