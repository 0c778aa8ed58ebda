import logging
import os

from dotenv import load_dotenv
from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

load_dotenv()

logger = logging.getLogger("sibflo_backend")

# --- Configuration ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

LLM_SECRET_ID = os.environ.get("LLM_SECRET_ID")

DATABASE_URL = os.environ.get("DATABASE_URL")
DB_HOST = os.environ.get("DB_HOST")
DB_PORT = int(os.environ.get("DB_PORT", "5432"))
DB_NAME = os.environ.get("DB_NAME", "sibflo")
DB_USER = os.environ.get("DB_USER", "postgres")
DB_PASSWORD = os.environ.get("DB_PASSWORD")
DB_SECRET_ID = os.environ.get("DB_SECRET_ID")

SQLITE_FALLBACK_URL = "sqlite:///sibflo.db"


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def _access_secret(secret_id: str) -> str:
    if not PROJECT_ID:
        raise RuntimeError(f"GOOGLE_CLOUD_PROJECT is required to read secret '{secret_id}'")
    client = secretmanager.SecretManagerServiceClient(credentials=_build_creds())
    name = client.secret_version_path(PROJECT_ID, secret_id, "latest")
    resp = client.access_secret_version(request={"name": name})
    return resp.payload.data.decode("utf-8").strip()


def get_vertex_location() -> tuple[str | None, str]:
    return PROJECT_ID, REGION


def get_llm_credential() -> str | None:
    """
    Default model credential: GEMINI_API_KEY, then OPENAI_API_KEY, then the
    Secret Manager secret named by LLM_SECRET_ID. None when nothing is configured
    (vertex tiers run on ambient credentials).
    """
    for var in ("GEMINI_API_KEY", "OPENAI_API_KEY"):
        value = os.environ.get(var)
        if value:
            return value
    if LLM_SECRET_ID:
        logger.info(f"[LLM] Reading credential from Secret Manager: {LLM_SECRET_ID}")
        return _access_secret(LLM_SECRET_ID)
    return None


def get_db_password() -> str:
    global DB_PASSWORD

    if DB_PASSWORD:
        return DB_PASSWORD

    if DB_SECRET_ID:
        DB_PASSWORD = _access_secret(DB_SECRET_ID)
        return DB_PASSWORD

    raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")


def get_database_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL
    if not DB_HOST:
        return SQLITE_FALLBACK_URL
    return f"postgresql+pg8000://{DB_USER}:{get_db_password()}@{DB_HOST}:{DB_PORT}/{DB_NAME}"


def get_db_engine(url: str | None = None):
    url = url or get_database_url()
    if url.startswith("sqlite"):
        logger.info(f"[DB] Using SQLite: {url}")
        return create_engine(url, connect_args={"check_same_thread": False})

    logger.info(f"[DB] Connecting to {url.split('@')[-1]}")
    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        connect_args={"timeout": 10},
    )


def create_session_factory(engine=None) -> sessionmaker:
    return sessionmaker(bind=engine or get_db_engine())
