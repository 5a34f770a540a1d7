"""
Session Store: enregistrements du funnel, indexés par id et bornés par un TTL.

- SessionStore: interface commune (create/get/update/mutateurs/sweep) et logique de fusion
- MemorySessionStore: dictionnaire en mémoire protégé par un verrou (dev, tests, mono-process)
- RedisSessionStore: un document JSON par session, TTL natif Redis, versionnement optimiste (WATCH/MULTI)

Toute mutation relit l'enregistrement frais, applique uniquement les champs demandés
puis écrit avec contrôle de version: deux mises à jour concurrentes sur des champs
différents ne s'écrasent pas.
"""
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import redis

from funnel.errors import SessionConflict, SessionStateError
from funnel.sessions.models import (
    ALLOWED_TRANSITIONS,
    FunnelSession,
    FunnelStep,
    SessionStatus,
    UpsellRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# Champs gérés par le store, jamais écrasés par update()
PROTECTED_FIELDS = {"id", "created_at", "version"}


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def new_session_id() -> str:
    """Identifiant opaque: ws_<horodatage base36>_<aléa>."""
    return f"ws_{_base36(int(time.time() * 1000))}_{_base36(secrets.randbits(40))}"


Mutator = Callable[[FunnelSession], Optional[Dict[str, Any]]]


class SessionStore(ABC):
    backend_name = "abstract"
    max_retries = 5

    def __init__(self, ttl: timedelta = timedelta(hours=24)):
        if ttl.total_seconds() <= 0:
            raise ValueError("Session TTL must be positive")
        self.ttl = ttl

    # --- Primitives de stockage ---
    @abstractmethod
    def _load(self, session_id: str) -> Optional[FunnelSession]:
        ...

    @abstractmethod
    def _insert(self, session: FunnelSession) -> None:
        ...

    @abstractmethod
    def _replace(self, session: FunnelSession, expected_version: int) -> bool:
        """Écrit la session si la version stockée vaut expected_version."""

    @abstractmethod
    def _remove(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def _all_ids(self) -> Iterable[str]:
        ...

    @abstractmethod
    def claim_idempotency_key(self, key: str, session_id: str, ttl_seconds: int = 600) -> Optional[str]:
        """
        Réserve une clé d'idempotence pour session_id.
        Retourne None si la clé est nouvelle, sinon l'id de session qui la détient déjà.
        """

    # --- Opérations ---
    def create(self, data: Dict[str, Any]) -> FunnelSession:
        now = utcnow()
        fields = {k: v for k, v in (data or {}).items() if k not in PROTECTED_FIELDS}
        fields.update(
            id=new_session_id(),
            status=SessionStatus.INITIATED,
            current_step=FunnelStep.CHECKOUT,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
            version=0,
        )
        session = FunnelSession.model_validate(fields)
        self._insert(session)
        logger.info("session.created id=%s backend=%s", session.id, self.backend_name)
        return session

    def get(self, session_id: str) -> Optional[FunnelSession]:
        if not session_id:
            return None
        session = self._load(session_id)
        if session is None:
            return None
        if session.is_expired():
            self._remove(session_id)
            logger.info("session.expired id=%s", session_id)
            return None
        return session

    def mutate(self, session_id: str, mutator: Mutator) -> Optional[FunnelSession]:
        """
        Lecture-modification-écriture avec versionnement optimiste.
        - mutator reçoit la session fraîche et retourne un dict de champs à fusionner (ou None: rien à faire)
        - en cas de conflit de version, on relit et on rejoue (max_retries)
        """
        for attempt in range(self.max_retries):
            current = self.get(session_id)
            if current is None:
                return None
            changes = mutator(current)
            if not changes:
                return current
            merged = current.model_dump()
            merged.update({k: v for k, v in changes.items() if k not in PROTECTED_FIELDS})
            merged["updated_at"] = utcnow()
            merged["version"] = current.version + 1
            updated = FunnelSession.model_validate(merged)
            if updated.expires_at <= updated.created_at:
                raise SessionStateError("expires_at must stay after created_at", session_id=session_id)
            if self._replace(updated, current.version):
                return updated
            logger.info("session.conflict id=%s attempt=%s", session_id, attempt + 1)
        raise SessionConflict(f"Too many concurrent updates on session {session_id}", session_id=session_id)

    def update(self, session_id: str, partial: Dict[str, Any]) -> Optional[FunnelSession]:
        return self.mutate(session_id, lambda _s: dict(partial or {}))

    def set_status(self, session_id: str, status: SessionStatus) -> Optional[FunnelSession]:
        status = SessionStatus(status)

        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            if s.status == status:
                return None
            if status not in ALLOWED_TRANSITIONS[s.status]:
                raise SessionStateError(
                    f"Illegal status transition {s.status.value} -> {status.value}",
                    session_id=session_id,
                )
            return {"status": status}

        return self.mutate(session_id, _apply)

    def set_step(self, session_id: str, step: FunnelStep) -> Optional[FunnelSession]:
        return self.update(session_id, {"current_step": FunnelStep(step)})

    def set_vault_id(self, session_id: str, vault_id: str) -> Optional[FunnelSession]:
        return self.update(session_id, {"vault_id": vault_id, "last_vault_update": utcnow()})

    def set_transaction_id(self, session_id: str, transaction_id: str) -> Optional[FunnelSession]:
        return self.update(session_id, {"transaction_id": transaction_id})

    def accept_upsell(self, session_id: str, product_code: str) -> Optional[FunnelSession]:
        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            if product_code in s.upsells_accepted and product_code not in s.upsells_declined:
                return None
            accepted = s.upsells_accepted + ([] if product_code in s.upsells_accepted else [product_code])
            return {
                "upsells_accepted": accepted,
                "upsells_declined": [c for c in s.upsells_declined if c != product_code],
            }

        return self.mutate(session_id, _apply)

    def decline_upsell(self, session_id: str, product_code: str) -> Optional[FunnelSession]:
        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            if product_code in s.upsells_declined and product_code not in s.upsells_accepted:
                return None
            declined = s.upsells_declined + ([] if product_code in s.upsells_declined else [product_code])
            return {
                "upsells_declined": declined,
                "upsells_accepted": [c for c in s.upsells_accepted if c != product_code],
            }

        return self.mutate(session_id, _apply)

    def add_upsell(
        self,
        session_id: str,
        record: UpsellRecord,
        next_step: Optional[FunnelStep] = None,
    ) -> Tuple[Optional[FunnelSession], bool]:
        """
        Ajoute un UpsellRecord (étapes uniques et croissantes).
        Retourne (session, created): created=False si la même étape/produit était déjà enregistrée.
        """
        created = {"value": False}

        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            created["value"] = False
            existing = s.upsell_for_step(record.step)
            if existing is not None:
                if existing.product_code == record.product_code:
                    return None
                raise SessionStateError(
                    f"Upsell step {record.step} already used by {existing.product_code}",
                    session_id=session_id,
                )
            if record.step <= s.last_upsell_step:
                raise SessionStateError(
                    f"Upsell step {record.step} is not after step {s.last_upsell_step}",
                    session_id=session_id,
                )
            created["value"] = True
            changes: Dict[str, Any] = {
                "upsells": s.upsells + [record],
                "upsells_accepted": s.upsells_accepted + ([] if record.product_code in s.upsells_accepted else [record.product_code]),
                "upsells_declined": [c for c in s.upsells_declined if c != record.product_code],
            }
            if next_step is not None:
                changes["current_step"] = next_step
            return changes

        session = self.mutate(session_id, _apply)
        return session, created["value"]

    def delete(self, session_id: str) -> bool:
        removed = self._remove(session_id)
        if removed:
            logger.info("session.deleted id=%s", session_id)
        return removed

    def sweep_expired(self) -> int:
        """Supprime physiquement les sessions expirées; retourne le nombre supprimé."""
        now = utcnow()
        removed = 0
        for session_id in list(self._all_ids()):
            session = self._load(session_id)
            if session is not None and session.is_expired(now):
                if self._remove(session_id):
                    removed += 1
        if removed:
            logger.info("session.sweep removed=%s", removed)
        return removed

    def iter_sessions(self) -> Iterable[FunnelSession]:
        for session_id in list(self._all_ids()):
            session = self.get(session_id)
            if session is not None:
                yield session

    def find_by_email(self, email: str) -> List[FunnelSession]:
        target = (email or "").strip().lower()
        return [s for s in self.iter_sessions() if s.email.lower() == target]

    def find_by_vault_id(self, vault_id: str) -> Optional[FunnelSession]:
        if not vault_id:
            return None
        matches = [s for s in self.iter_sessions() if s.vault_id == vault_id]
        if not matches:
            return None
        return max(matches, key=lambda s: s.updated_at)

    def stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {s.value: 0 for s in SessionStatus}
        by_step: Dict[str, int] = {s.value: 0 for s in FunnelStep}
        total = 0
        with_vault = 0
        upsells = 0
        for session in self.iter_sessions():
            total += 1
            by_status[session.status.value] += 1
            by_step[session.current_step.value] += 1
            with_vault += 1 if session.vault_id else 0
            upsells += len(session.upsells)
        return {
            "backend": self.backend_name,
            "total": total,
            "byStatus": by_status,
            "byStep": by_step,
            "withVault": with_vault,
            "upsellsAccepted": upsells,
        }


class MemorySessionStore(SessionStore):
    backend_name = "memory"

    def __init__(self, ttl: timedelta = timedelta(hours=24)):
        super().__init__(ttl)
        self._lock = threading.RLock()
        self._sessions: Dict[str, FunnelSession] = {}
        self._claims: Dict[str, Tuple[str, float]] = {}

    def _load(self, session_id: str) -> Optional[FunnelSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session is not None else None

    def _insert(self, session: FunnelSession) -> None:
        with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)

    def _replace(self, session: FunnelSession, expected_version: int) -> bool:
        with self._lock:
            stored = self._sessions.get(session.id)
            if stored is None or stored.version != expected_version:
                return False
            self._sessions[session.id] = session.model_copy(deep=True)
            return True

    def _remove(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def _all_ids(self) -> Iterable[str]:
        with self._lock:
            return list(self._sessions.keys())

    def claim_idempotency_key(self, key: str, session_id: str, ttl_seconds: int = 600) -> Optional[str]:
        now = time.monotonic()
        with self._lock:
            held = self._claims.get(key)
            if held and held[1] > now:
                return held[0]
            self._claims[key] = (session_id, now + ttl_seconds)
            return None

    def sweep_expired(self) -> int:
        removed = super().sweep_expired()
        now = time.monotonic()
        with self._lock:
            stale = [key for key, (_, deadline) in self._claims.items() if deadline <= now]
            for key in stale:
                del self._claims[key]
        if stale:
            logger.debug("session.sweep claims_removed=%s", len(stale))
        return removed


class RedisSessionStore(SessionStore):
    backend_name = "redis"
    key_prefix = "funnel:session:"
    claim_prefix = "funnel:idem:"

    def __init__(self, client: "redis.Redis", ttl: timedelta = timedelta(hours=24)):
        super().__init__(ttl)
        self._redis = client

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    @staticmethod
    def _seconds_left(session: FunnelSession) -> int:
        remaining = (session.expires_at - utcnow()).total_seconds()
        return max(1, int(remaining) + 1)

    def _load(self, session_id: str) -> Optional[FunnelSession]:
        raw = self._redis.get(self._key(session_id))
        if raw is None:
            return None
        return FunnelSession.model_validate_json(raw)

    def _insert(self, session: FunnelSession) -> None:
        self._redis.set(self._key(session.id), session.model_dump_json(), ex=self._seconds_left(session), nx=True)

    def _replace(self, session: FunnelSession, expected_version: int) -> bool:
        key = self._key(session.id)
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if raw is None:
                    pipe.unwatch()
                    return False
                stored = FunnelSession.model_validate_json(raw)
                if stored.version != expected_version:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, session.model_dump_json(), ex=self._seconds_left(session))
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def _remove(self, session_id: str) -> bool:
        return bool(self._redis.delete(self._key(session_id)))

    def _all_ids(self) -> Iterable[str]:
        prefix_len = len(self.key_prefix)
        for key in self._redis.scan_iter(match=f"{self.key_prefix}*"):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            yield key[prefix_len:]

    def claim_idempotency_key(self, key: str, session_id: str, ttl_seconds: int = 600) -> Optional[str]:
        redis_key = f"{self.claim_prefix}{key}"
        if self._redis.set(redis_key, session_id, nx=True, ex=ttl_seconds):
            return None
        held = self._redis.get(redis_key)
        if isinstance(held, bytes):
            held = held.decode("utf-8")
        return held
