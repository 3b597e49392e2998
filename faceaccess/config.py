# faceaccess/config.py
# Central place for thresholds, paths and service constants
import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ====== Service ======
API_PREFIX = os.getenv("API_PREFIX", "/api")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if os.getenv("CORS_ALLOW_ORIGINS") else ["*"]

# ====== Storage ======
# json | sqlite | mongodb (mongodb falls back to json when unreachable)
DATABASE = os.getenv("DATABASE", "json").lower()
DATA_DIR = os.getenv("DATA_DIR", "data")
USERS_JSON_PATH = os.getenv("USERS_JSON_PATH", os.path.join(DATA_DIR, "users.json"))
SQLITE_PATH = os.getenv("SQLITE_PATH", os.path.join(DATA_DIR, "users.db"))
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI") or "mongodb://localhost:27017"
MONGO_DB = os.getenv("MONGO_DB", "face-recognition")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

# Keep only the most recent observations per user
ATTRIBUTE_HISTORY_CAP = int(os.getenv("ATTRIBUTE_HISTORY_CAP", "200"))

# ====== Uploads ======
UPLOADS_DIR = os.getenv("UPLOADS_DIR", "uploads")
UPLOADS_URL_PREFIX = "/uploads"
MAX_PHOTOS = int(os.getenv("MAX_PHOTOS", "20"))
IMG_MAX_MB = int(os.getenv("IMG_MAX_MB", "10"))

# ====== Biometrics ======
# Euclidean distance; lower is stricter. 0.45 strict .. 0.6 lenient on
# 128-d descriptors, ~1.0 for normalised 512-d ArcFace embeddings.
MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", "0.6"))
INSIGHTFACE_MODEL = os.getenv("INSIGHTFACE_MODEL", "buffalo_l")
DET_SIZE = tuple(int(v) for v in os.getenv("DET_SIZE", "640,640").split(","))

# ====== Liveness (eye blink) ======
REQUIRE_LIVENESS = _flag("REQUIRE_LIVENESS")
BLINK_THRESHOLD = float(os.getenv("BLINK_THRESHOLD", "0.22"))
LIVENESS_WINDOW = int(os.getenv("LIVENESS_WINDOW", "10"))

# ====== Live recognition client ======
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "0.22"))
RESULT_HOLD_SECONDS = float(os.getenv("RESULT_HOLD_SECONDS", "5"))
NOTIFY_DEBOUNCE_SECONDS = float(os.getenv("NOTIFY_DEBOUNCE_SECONDS", "30"))
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "")
SERVER_URL = os.getenv("SERVER_URL", "")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "5"))
