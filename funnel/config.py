# funnel.config
from pathlib import Path
import json
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du backend funnel.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (passerelle NMI, webhooks, Supabase, Redis)
- Expose les réglages du funnel (TTL des sessions, taxes, livraison, polling)
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _env_float(name: str, default: float) -> float:
    raw = _clean_env(os.getenv(name) or "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default

def _env_int(name: str, default: int) -> int:
    raw = _clean_env(os.getenv(name) or "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default

# Environnement: "production" active la vérification stricte des webhooks
APP_ENV = _clean_env(os.getenv("APP_ENV") or os.getenv("ENVIRONMENT") or "development").lower()
IS_PRODUCTION = APP_ENV in ("production", "prod")
DEBUG_ERRORS = (os.getenv("DEBUG_ERRORS", "0").lower() in ("1", "true", "yes"))

# Passerelle de paiement (API Direct Post NMI)
NMI_SECURITY_KEY = _clean_env(os.getenv("NMI_SECURITY_KEY") or os.getenv("NMI_API_KEY") or "")
NMI_ENDPOINT = _clean_env(os.getenv("NMI_ENDPOINT") or "https://secure.networkmerchants.com/api/transact.php")
GATEWAY_TIMEOUT_SECONDS = _env_float("GATEWAY_TIMEOUT_SECONDS", 30.0)

# Secrets des webhooks (HMAC-SHA256 sur le body brut)
NMI_WEBHOOK_SECRET = _clean_env(os.getenv("NMI_WEBHOOK_SECRET") or "")
KONNECTIVE_WEBHOOK_SECRET = _clean_env(os.getenv("KONNECTIVE_WEBHOOK_SECRET") or "")

# Sessions funnel: backend de stockage, TTL et balayage périodique
SESSION_BACKEND = _clean_env(os.getenv("SESSION_BACKEND") or "memory").lower()
SESSION_REDIS_URL = _clean_env(os.getenv("SESSION_REDIS_URL") or "redis://127.0.0.1:6379/1")
SESSION_TTL_HOURS = _env_float("SESSION_TTL_HOURS", 24.0)
SESSION_SWEEP_INTERVAL_SECONDS = _env_float("SESSION_SWEEP_INTERVAL_SECONDS", 300.0)

# Enregistrements de commande (source secondaire pour l'agrégation)
ORDER_BACKEND = _clean_env(os.getenv("ORDER_BACKEND") or "memory").lower()
ORDER_RETENTION_DAYS = _env_float("ORDER_RETENTION_DAYS", 7.0)
ORDER_TAX_POLICY = _clean_env(os.getenv("ORDER_TAX_POLICY") or "fixed").lower()

# Tarification: taxe par état (US) et livraison forfaitaire
DEFAULT_TAX_RATES = {
    "CA": 0.0875,
    "TX": 0.0625,
    "NY": 0.08,
    "FL": 0.06,
    "WA": 0.065,
}
try:
    TAX_RATES = {str(k).upper(): float(v) for k, v in json.loads(os.getenv("TAX_RATES") or "{}").items()} or dict(DEFAULT_TAX_RATES)
except (ValueError, AttributeError):
    TAX_RATES = dict(DEFAULT_TAX_RATES)
SHIPPING_FLAT = _env_float("SHIPPING_FLAT", 0.0)

# Nombre d'étapes upsell dans le funnel (upsell-1, upsell-2)
MAX_UPSELL_STEPS = _env_int("MAX_UPSELL_STEPS", 2)

# Contrat de polling du statut de checkout
STATUS_POLL_INTERVAL_SECONDS = _env_float("STATUS_POLL_INTERVAL_SECONDS", 2.0)
STATUS_POLL_MAX_INTERVAL_SECONDS = _env_float("STATUS_POLL_MAX_INTERVAL_SECONDS", 10.0)
STATUS_POLL_BACKOFF = _env_float("STATUS_POLL_BACKOFF", 1.5)
STATUS_POLL_MAX_ATTEMPTS = _env_int("STATUS_POLL_MAX_ATTEMPTS", 20)
STATUS_ESTIMATED_SECONDS = _env_int("STATUS_ESTIMATED_SECONDS", 30)

# Supabase: URL et clé service (table funnel_orders)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "")
ORDERS_TABLE = _clean_env(os.getenv("ORDERS_TABLE") or "funnel_orders")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# CORS / hôtes autorisés
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")

# Widget de tokenisation côté client (Collect.js)
NMI_PUBLIC_KEY = _clean_env(os.getenv("NMI_PUBLIC_KEY") or os.getenv("NEXT_PUBLIC_NMI_PUBLIC_KEY") or "")
COLLECT_JS_URL = _clean_env(os.getenv("COLLECT_JS_URL") or "https://secure.nmi.com/token/Collect.js")
