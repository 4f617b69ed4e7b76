import os

from dotenv import load_dotenv

load_dotenv()

# ---------- API keys ----------

DEEPGRAM_API_KEY = os.getenv("DEEPGRAM_API_KEY", "").strip()
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
GOOGLE_TRANSLATE_API_KEY = os.getenv("GOOGLE_TRANSLATE_API_KEY", "").strip()
ASSEMBLYAI_API_KEY = os.getenv("ASSEMBLYAI_API_KEY", "").strip()

REQUIRED_KEYS = {
    "DEEPGRAM_API_KEY": DEEPGRAM_API_KEY,
    "GEMINI_API_KEY": GEMINI_API_KEY,
}

# ---------- External services ----------

DEEPGRAM_URL = "https://api.deepgram.com/v1/listen"
DEEPGRAM_MODEL = os.getenv("DEEPGRAM_MODEL", "nova-2")

GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

TRANSLATE_URL = "https://translation.googleapis.com/language/translate/v2"

API_TIMEOUT = float(os.getenv("API_TIMEOUT", "30"))
API_RETRIES = int(os.getenv("API_RETRIES", "2"))
API_RETRY_DELAY = float(os.getenv("API_RETRY_DELAY", "0.5"))

# ---------- Sessions / capture ----------

DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "en")
DEFAULT_START_KEYWORD = os.getenv("DEFAULT_START_KEYWORD", "")
DEFAULT_END_KEYWORD = os.getenv("DEFAULT_END_KEYWORD", "")

SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(60 * 60)))
SESSION_SWEEP_INTERVAL_SECONDS = int(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "60"))

TOPIC_FALLBACK_WORDS = 3

# Chunk transcripts kept per session for `summarize` without text
TRANSCRIPT_LOG_LIMIT = int(os.getenv("TRANSCRIPT_LOG_LIMIT", "200"))

# ---------- Server ----------

MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "25"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE", "threading")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
DEBUG = os.getenv("DEBUG", "False").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def missing_api_keys():
    """Names of required API keys that are not set."""
    return [name for name, value in REQUIRED_KEYS.items() if not value]


def cors_origins():
    if CORS_ORIGINS.strip() == "*":
        return "*"
    return [o.strip() for o in CORS_ORIGINS.split(",") if o.strip()]
