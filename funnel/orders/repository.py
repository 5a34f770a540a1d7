"""
Accès aux données pour la feature 'orders': enregistrement secondaire des commandes.

Un enregistrement par session funnel:
{ session_id, customer, main_order, upsells[], created_at, updated_at }

Il survit à l'expiration de la session (ORDER_RETENTION_DAYS) et sert de repli
à l'agrégateur. Remplace l'appel HTTP interne vers une route "order details".
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import funnel.infra.supabase_client as supabase_client
from funnel.config import ORDERS_TABLE
from funnel.sessions.models import utcnow

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return utcnow().isoformat()


def _merge_upsell(upsells: List[Dict[str, Any]], upsell: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    """Ajoute l'upsell si son étape est nouvelle; None si déjà présent."""
    if any(int(u.get("step") or 0) == int(upsell.get("step") or 0) for u in upsells):
        return None
    return sorted(upsells + [upsell], key=lambda u: int(u.get("step") or 0))


class OrderRepository(ABC):
    backend_name = "abstract"

    @abstractmethod
    def save_main_order(self, session_id: str, *, main_order: Dict[str, Any], customer: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def add_upsell(self, session_id: str, upsell: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...


class MemoryOrderRepository(OrderRepository):
    backend_name = "memory"

    def __init__(self, retention: timedelta = timedelta(days=7)):
        self.retention = retention
        self._lock = threading.Lock()
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._stored_at: Dict[str, datetime] = {}

    def _purge(self) -> None:
        limit = utcnow() - self.retention
        for session_id in [k for k, ts in self._stored_at.items() if ts < limit]:
            self._orders.pop(session_id, None)
            self._stored_at.pop(session_id, None)

    def save_main_order(self, session_id: str, *, main_order: Dict[str, Any], customer: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._purge()
            record = self._orders.get(session_id) or {
                "session_id": session_id,
                "upsells": [],
                "created_at": _now_iso(),
            }
            record.update(main_order=dict(main_order), customer=dict(customer or {}), updated_at=_now_iso())
            self._orders[session_id] = record
            self._stored_at[session_id] = utcnow()
            return dict(record)

    def add_upsell(self, session_id: str, upsell: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._orders.get(session_id)
            if record is None:
                record = {"session_id": session_id, "main_order": None, "customer": {}, "upsells": [], "created_at": _now_iso()}
            merged = _merge_upsell(list(record.get("upsells") or []), dict(upsell))
            if merged is not None:
                record["upsells"] = merged
                record["updated_at"] = _now_iso()
            self._orders[session_id] = record
            self._stored_at[session_id] = utcnow()
            return dict(record)

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._purge()
            record = self._orders.get(session_id)
            return dict(record) if record else None


# module funnel.orders.repository (Supabase)
class SupabaseOrderRepository(OrderRepository):
    """
    Enregistrements de commande dans la table Supabase ORDERS_TABLE (par défaut 'funnel_orders').
    - Client service-role (écriture côté serveur, sans utilisateur connecté)
    - En cas d'erreur: log + None (l'agrégateur tolère une source manquante)
    """
    backend_name = "supabase"

    def __init__(self, table: str = ORDERS_TABLE):
        self.table = table

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = (
                supabase_client.get_service_supabase()
                .table(self.table)
                .select("*")
                .eq("session_id", session_id)
                .limit(1)
                .execute()
            )
            rows = res.data or []
            return rows[0] if rows else None
        except Exception:
            logger.exception("orders.repository.get failed session_id=%s", session_id)
            return None

    def _upsert(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            res = (
                supabase_client.get_service_supabase()
                .table(self.table)
                .upsert(row, on_conflict="session_id")
                .execute()
            )
            rows = res.data or []
            return rows[0] if isinstance(rows, list) and rows else row
        except Exception:
            logger.exception("orders.repository.upsert failed session_id=%s", row.get("session_id"))
            return None

    def save_main_order(self, session_id: str, *, main_order: Dict[str, Any], customer: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        existing = self.get(session_id) or {}
        return self._upsert({
            "session_id": session_id,
            "main_order": main_order,
            "customer": customer or {},
            "upsells": existing.get("upsells") or [],
            "updated_at": _now_iso(),
        })

    def add_upsell(self, session_id: str, upsell: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        existing = self.get(session_id) or {"session_id": session_id, "customer": {}, "main_order": None}
        merged = _merge_upsell(list(existing.get("upsells") or []), dict(upsell))
        if merged is None:
            return existing
        return self._upsert({
            "session_id": session_id,
            "main_order": existing.get("main_order"),
            "customer": existing.get("customer") or {},
            "upsells": merged,
            "updated_at": _now_iso(),
        })
