# aikizi/config.py
import os

from dotenv import load_dotenv
from sqlalchemy.engine.url import make_url

# Carga .env antes de leer variables (no pisa lo que ya exista en el entorno)
load_dotenv(override=False)


def _env_list(name: str) -> tuple:
    raw = os.getenv(name, "") or ""
    return tuple(x.strip() for x in raw.split(",") if x.strip())


class Config:
    # ==========================
    #  SECRET / SECURITY
    # ==========================
    SECRET_KEY = os.getenv("SECRET_KEY") or os.getenv("FLASK_SECRET_KEY", "change-me")

    # ==========================
    #  DATABASE
    # ==========================
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///aikizi.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # SQLite: esperar el lock en vez de fallar con "database is locked"
    SQLALCHEMY_ENGINE_OPTIONS = (
        {"connect_args": {"timeout": 30}}
        if SQLALCHEMY_DATABASE_URI.startswith("sqlite")
        else {"pool_pre_ping": True}
    )

    # ==========================
    #  AUTH (JWKS)
    # ==========================
    SUPABASE_JWKS_URL = os.getenv("SUPABASE_JWKS_URL")
    SUPABASE_JWT_ISSUER = os.getenv("SUPABASE_JWT_ISSUER")
    SUPABASE_JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE")
    JWKS_CACHE_SECONDS = int(os.getenv("JWKS_CACHE_SECONDS", "3600"))

    # Subjects que son admin sin mirar la tabla users
    ADMIN_AUTH_IDS = _env_list("ADMIN_AUTH_IDS")

    # ==========================
    #  PROVEEDORES IA
    # ==========================
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_BASE_URL = os.getenv(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
    )

    # ==========================
    #  DECODE
    # ==========================
    # sync: la respuesta trae el resultado; async: devuelve jobId y se hace polling
    DECODE_MODE = os.getenv("DECODE_MODE", "sync").strip().lower()
    DECODE_TIMEOUT_SECONDS = float(os.getenv("DECODE_TIMEOUT_SECONDS", "60"))
    METADATA_TIMEOUT_SECONDS = float(os.getenv("METADATA_TIMEOUT_SECONDS", "15"))
    DECODE_COST = int(os.getenv("DECODE_COST", "1"))
    DEFAULT_DECODE_MODEL = os.getenv("DEFAULT_DECODE_MODEL", "gemini-2.5-flash")
    CANCEL_POLL_SECONDS = float(os.getenv("CANCEL_POLL_SECONDS", "0.5"))
    STALE_JOB_SECONDS = int(os.getenv("STALE_JOB_SECONDS", "300"))

    MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "25") or 25)
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER")  # None => <instance>/uploads

    # ==========================
    #  TOKENS / PLANES
    # ==========================
    WELCOME_TOKENS = int(os.getenv("WELCOME_TOKENS", "1000"))
    PRO_MONTHLY_TOKENS = int(os.getenv("PRO_MONTHLY_TOKENS", "10000"))

    # ==========================
    #  CRON / CELERY / LOGS
    # ==========================
    CRON_SECRET = os.getenv("CRON_SECRET")
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
    CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


# --- Asegurar carpeta del archivo SQLite (evita "unable to open database file")
def ensure_sqlite_dir(uri: str) -> None:
    url = make_url(uri)
    if url.get_backend_name() != "sqlite":
        return
    db_path = url.database
    if db_path and db_path != ":memory:":
        directory = os.path.dirname(db_path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)
