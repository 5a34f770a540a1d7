from typing import Optional
from supabase import create_client, Client
from funnel.config import SUPABASE_URL, SUPABASE_SERVICE_KEY

_service_supabase: Optional[Client] = None

def get_service_supabase() -> Client:
    """
    Client Supabase service-role (bypass RLS), utilisé côté serveur pour les enregistrements de commande.
    Instance paresseuse partagée par le process.
    """
    global _service_supabase
    if not SUPABASE_URL:
        raise RuntimeError("SUPABASE_URL manquant pour get_service_supabase()")
    if not SUPABASE_SERVICE_KEY:
        raise RuntimeError("SUPABASE_SERVICE_KEY manquant pour get_service_supabase()")
    if _service_supabase is None:
        _service_supabase = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
    return _service_supabase

def health_supabase_info() -> dict:
    """État de configuration Supabase (sans appel réseau)."""
    return {
        "url_set": bool(SUPABASE_URL),
        "service_key_set": bool(SUPABASE_SERVICE_KEY),
        "client_ready": _service_supabase is not None,
    }
