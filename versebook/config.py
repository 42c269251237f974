import os

DB = {
    "host": os.getenv("VERSEBOOK_DB_HOST", "localhost"),
    "port": int(os.getenv("VERSEBOOK_DB_PORT", "5432")),
    "dbname": os.getenv("VERSEBOOK_DB_NAME", "versebook"),
    "user": os.getenv("VERSEBOOK_DB_USER", "versebook"),
    "password": os.getenv("VERSEBOOK_DB_PASSWORD", "versebookpassword"),
}

# "postgres" or "memory"
DOCUMENT_BACKEND = os.getenv("VERSEBOOK_DOCUMENT_BACKEND", "postgres")

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-3.5-turbo")
OPENAI_TTS_MODEL = os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts")
OPENAI_TTS_VOICE = os.getenv("OPENAI_TTS_VOICE", "echo")
OPENAI_STT_MODEL = os.getenv("OPENAI_STT_MODEL", "whisper-1")
OPENAI_TIMEOUT_SEC = float(os.getenv("OPENAI_TIMEOUT_SEC", "30"))
TTS_MAX_CHARS = 4096

ESV_BASE_URL = os.getenv("ESV_BASE_URL", "https://api.esv.org/v3")
ESV_API_KEY = os.getenv("ESV_API_KEY", "")
ESV_TIMEOUT_SEC = float(os.getenv("ESV_TIMEOUT_SEC", "10"))

BLOB_DIR = os.getenv("VERSEBOOK_BLOB_DIR", "data/blobs")
BLOB_BASE_URL = os.getenv("VERSEBOOK_BLOB_BASE_URL", "http://localhost:8000/blobs")

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
TASK_TTL_SEC = int(os.getenv("TASK_TTL_SEC", "86400"))

API_TITLE = "Versebook API"
API_VERSION = "0.1.0"
