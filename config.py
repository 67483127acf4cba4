"""
Configuration file for the Inflio clip backend.
Contains all global constants, read from the environment with sane defaults.
"""

import os

# --- Application ---
APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

# --- Database & queue ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./inflio.db")
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

# --- Klap (clip extraction vendor) ---
KLAP_API_KEY = os.getenv("KLAP_API_KEY", "")
KLAP_API_URL = os.getenv("KLAP_API_URL", "https://api.klap.app/v2")
KLAP_TIMEOUT = float(os.getenv("KLAP_TIMEOUT", "30"))
KLAP_LANGUAGE = os.getenv("KLAP_LANGUAGE", "en")
KLAP_MAX_DURATION = int(os.getenv("KLAP_MAX_DURATION", "30"))
KLAP_MAX_CLIP_COUNT = int(os.getenv("KLAP_MAX_CLIP_COUNT", "10"))
KLAP_EXPORT_POLL_INTERVAL = float(os.getenv("KLAP_EXPORT_POLL_INTERVAL", "5"))
KLAP_EXPORT_MAX_POLLS = int(os.getenv("KLAP_EXPORT_MAX_POLLS", "60"))
KLAP_PLAYER_URL = "https://klap.app/player"

# --- Worker & cron ---
WORKER_SECRET = os.getenv("WORKER_SECRET", "")
CRON_SECRET = os.getenv("CRON_SECRET", "")
WORKER_URL = os.getenv("WORKER_URL", "http://localhost:8000/api/worker/klap")
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "60"))
POLL_BATCH_SIZE = int(os.getenv("POLL_BATCH_SIZE", "20"))

# --- Authentication (identity provider issues HS256 JWTs) ---
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_ISSUER = os.getenv("AUTH_JWT_ISSUER", "")

# --- Media storage ---
PROJECT_ROOT = os.getcwd()
MEDIA_DIR = os.getenv("MEDIA_DIR", os.path.join(PROJECT_ROOT, "media"))
UPLOAD_DIR = os.path.join(MEDIA_DIR, "uploads")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# --- Processing defaults ---
TASK_TYPES = ("transcription", "clips", "blog", "social", "podcast")
DEFAULT_WORKFLOWS = {"transcription": True, "clips": True, "blog": False, "social": False, "podcast": False}
CLIP_TASK_TYPE = "clips"
DISPATCHED_PROGRESS = 20
MAX_POLLING_PROGRESS = 50
