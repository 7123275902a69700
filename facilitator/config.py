# facilitator.config
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du facilitateur.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, Redis, relayer on-chain, JWT)
- Expose les constantes de politique de règlement (seuils de capture, timeouts)
- Expose les budgets de rate limiting par route
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _int_env(name: str, default: int) -> int:
    raw = _clean_env(os.getenv(name) or "")
    return int(raw) if raw else default

# Supabase: URL et clé service (opérations privilégiées côté serveur)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# Backends de stockage
# - LEDGER_BACKEND: "memory" (mono-processus, dev/tests) ou "supabase"
# - TOKEN_STORE_BACKEND: "redis" ou "supabase"
LEDGER_BACKEND = _clean_env(os.getenv("LEDGER_BACKEND") or "memory").lower()
TOKEN_STORE_BACKEND = _clean_env(os.getenv("TOKEN_STORE_BACKEND") or "redis").lower()
REDIS_URL = _clean_env(os.getenv("REDIS_URL") or os.getenv("RATE_LIMIT_REDIS_URL") or "redis://127.0.0.1:6379/0")

# JWT (identité payeur)
JWT_SECRET = _clean_env(os.getenv("JWT_SECRET") or "")
JWT_ISSUER = _clean_env(os.getenv("JWT_ISSUER") or "x402-escrow")
JWT_AUDIENCE = _clean_env(os.getenv("JWT_AUDIENCE") or "x402-escrow-api")
JWT_EXPIRATION_HOURS = _int_env("JWT_EXPIRATION_HOURS", 24)

# Relayer on-chain (autorisation, capture, void, vérification de signatures)
FACILITATOR_ADDRESS = _clean_env(os.getenv("FACILITATOR_ADDRESS") or "").lower()
CHAIN_RELAYER_URL = _clean_env(os.getenv("CHAIN_RELAYER_URL") or "http://127.0.0.1:8545")
CHAIN_RELAYER_TOKEN = _clean_env(os.getenv("CHAIN_RELAYER_TOKEN") or "")

# Timeouts des opérations externes (secondes)
VERIFY_TIMEOUT_SECONDS = _int_env("VERIFY_TIMEOUT_SECONDS", 30)
SETTLE_TIMEOUT_SECONDS = _int_env("SETTLE_TIMEOUT_SECONDS", 60)
RECLAIM_TIMEOUT_SECONDS = _int_env("RECLAIM_TIMEOUT_SECONDS", 90)

# Politique de capture
# - tier 1: pending >= CAPTURE_THRESHOLD (plus petite unité, 1 USDC = 1000000)
# - tier 2: autorisation expirant dans CAPTURE_EXPIRY_WINDOW_SECONDS
# - tier 3: capture synchrone si l'autorisation expire dans SYNC_CAPTURE_THRESHOLD_SECONDS
CAPTURE_THRESHOLD = _int_env("CAPTURE_THRESHOLD", 1_000_000)
CAPTURE_EXPIRY_WINDOW_SECONDS = _int_env("CAPTURE_EXPIRY_WINDOW_SECONDS", 2 * 60 * 60)
SYNC_CAPTURE_THRESHOLD_SECONDS = _int_env("SYNC_CAPTURE_THRESHOLD_SECONDS", 30 * 60)
CAPTURE_BATCH_SIZE = _int_env("CAPTURE_BATCH_SIZE", 50)
CRON_SECRET = _clean_env(os.getenv("CRON_SECRET") or "")

# Jetons à usage unique et découverte
AUTH_NONCE_TTL_SECONDS = _int_env("AUTH_NONCE_TTL_SECONDS", 5 * 60)
TOKEN_RETENTION_SECONDS = _int_env("TOKEN_RETENTION_SECONDS", 24 * 60 * 60)
SUPPORTED_CACHE_TTL_SECONDS = _int_env("SUPPORTED_CACHE_TTL_SECONDS", 60)

# Bornes de dépôt par défaut (réseaux sans bornes configurées)
DEFAULT_MIN_DEPOSIT = _clean_env(os.getenv("DEFAULT_MIN_DEPOSIT") or "5000000")
DEFAULT_MAX_DEPOSIT = _clean_env(os.getenv("DEFAULT_MAX_DEPOSIT") or "100000000")

# CORS / hosts
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

# Rate limiting: (requêtes, fenêtre en secondes)
RATE_LIMIT_NONCE = (10, 60)
RATE_LIMIT_AUTH_VERIFY = (5, 60)
RATE_LIMIT_FACILITATOR = (100, 60)
RATE_LIMIT_RECLAIM = (5, 60)
RATE_LIMIT_MANAGEMENT = (60, 60)
