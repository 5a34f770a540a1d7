"""
Statut asynchrone du checkout et contrat de polling.

Le client interroge GET /api/v1/checkout/status/{session_id} selon un contrat borné:
- intervalle initial, facteur de backoff, intervalle maximum
- nombre maximal de tentatives
- états terminaux: completed, failed, not_found (session absente ou expirée)

StatusPoller implémente ce contrat côté Python (outils, tests, intégrations serveur à serveur).
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from funnel.sessions.models import FunnelSession, FunnelStep, SessionStatus, utcnow
from funnel.sessions.navigation import retry_location, step_location

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"


TERMINAL_STATES = {PollState.COMPLETED, PollState.FAILED, PollState.NOT_FOUND}


class PollContract(BaseModel):
    interval: float = 2.0
    backoff: float = 1.5
    max_interval: float = 10.0
    max_attempts: int = 20

    def delay_for(self, attempt: int) -> float:
        """Délai avant la tentative suivante (attempt commence à 1)."""
        return min(self.max_interval, self.interval * (self.backoff ** max(0, attempt - 1)))

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "intervalMs": int(self.interval * 1000),
            "backoff": self.backoff,
            "maxIntervalMs": int(self.max_interval * 1000),
            "maxAttempts": self.max_attempts,
            "terminalStates": sorted(s.value for s in TERMINAL_STATES),
        }


def poll_state_of(status: Optional[str]) -> PollState:
    if status == SessionStatus.COMPLETED.value:
        return PollState.COMPLETED
    if status == SessionStatus.FAILED.value:
        return PollState.FAILED
    if status in (None, "", PollState.NOT_FOUND.value):
        return PollState.NOT_FOUND
    return PollState.PENDING


def describe_status(session: FunnelSession, contract: PollContract, estimated_seconds: int = 30) -> Dict[str, Any]:
    """
    Réponse de l'endpoint de statut:
    - nextStep: page suivante selon l'état (retry si failed, upsell/merci si completed)
    - estimatedWaitTime: secondes restantes estimées tant que la vente est en cours
    """
    elapsed = (utcnow() - session.created_at).total_seconds()
    if session.status == SessionStatus.FAILED:
        next_step = retry_location()
    elif session.status == SessionStatus.COMPLETED:
        next_step = step_location(session.id, session.current_step, session.transaction_id)
    else:
        next_step = step_location(session.id, FunnelStep.PROCESSING)
    payload: Dict[str, Any] = {
        "success": True,
        "sessionId": session.id,
        "status": session.status.value,
        "state": poll_state_of(session.status.value).value,
        "currentStep": session.current_step.value,
        "transactionId": session.transaction_id,
        "nextStep": next_step,
        "estimatedWaitTime": max(0, int(estimated_seconds - elapsed)) if session.status == SessionStatus.PROCESSING else 0,
        "poll": contract.to_public_dict(),
    }
    if session.status == SessionStatus.FAILED:
        payload["failureReason"] = session.metadata.get("failure_reason")
    return payload


class PollResult(BaseModel):
    state: PollState
    attempts: int
    last: Optional[Dict[str, Any]] = None
    errors: List[str] = []


class StatusPoller:
    """
    Machine à états de polling bornée.
    - fetch() retourne le payload de statut (dict avec 'status') ou None si la session est introuvable
    - une exception de fetch() compte comme tentative (erreur transitoire) sans arrêter le polling
    """

    def __init__(
        self,
        fetch: Callable[[], Optional[Dict[str, Any]]],
        contract: Optional[PollContract] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fetch = fetch
        self.contract = contract or PollContract()
        self.sleep = sleep

    def run(self) -> PollResult:
        errors: List[str] = []
        last: Optional[Dict[str, Any]] = None
        for attempt in range(1, self.contract.max_attempts + 1):
            try:
                last = self.fetch()
                state = poll_state_of((last or {}).get("status") if last is not None else None)
                if state in TERMINAL_STATES:
                    return PollResult(state=state, attempts=attempt, last=last, errors=errors)
            except Exception as exc:
                logger.warning("status poll attempt=%s failed: %s", attempt, exc)
                errors.append(str(exc))
            if attempt < self.contract.max_attempts:
                self.sleep(self.contract.delay_for(attempt))
        return PollResult(state=PollState.EXHAUSTED, attempts=self.contract.max_attempts, last=last, errors=errors)
