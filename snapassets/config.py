from dotenv import load_dotenv
load_dotenv()

import logging
import os

import anthropic

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("snapassets")

# ---------------- Claude ----------------
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5-20250929")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
CLAUDE_RESPONSE_MAX_TOKENS = int(os.getenv("CLAUDE_RESPONSE_MAX_TOKENS", "1500"))
POLICY_RESPONSE_MAX_TOKENS = int(os.getenv("POLICY_RESPONSE_MAX_TOKENS", "4096"))
MAX_POLICY_PAGES = max(1, int(os.getenv("MAX_POLICY_PAGES", "100")))

# ---------------- Storage ----------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./snapassets.db")
MEDIA_DIR = os.getenv("MEDIA_DIR", "./media")
MEDIA_BASE_URL = os.getenv("MEDIA_BASE_URL", "/media").rstrip("/")
DUPLICATE_WINDOW_SECONDS = int(os.getenv("DUPLICATE_WINDOW_SECONDS", "300"))
DUPLICATE_VALUE_TOLERANCE = float(os.getenv("DUPLICATE_VALUE_TOLERANCE", "10"))

# ---------------- Uploads / batches ----------------
MAX_UPLOAD_FILES = max(1, int(os.getenv("MAX_UPLOAD_FILES", "5")))
MAX_UPLOAD_BYTES = max(1, int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))))
BATCH_CONCURRENCY = max(1, int(os.getenv("BATCH_CONCURRENCY", "1")))
BATCH_TTL_SECONDS = int(os.getenv("BATCH_TTL_SECONDS", "3600"))

logger.debug("[config]: CLAUDE_MODEL = %s", CLAUDE_MODEL)
logger.debug("[config]: ANTHROPIC_API_KEY present: %s", bool(ANTHROPIC_API_KEY))
logger.debug("[config]: DATABASE_URL = %s MEDIA_DIR = %s", DATABASE_URL, MEDIA_DIR)
logger.debug(
    "[config]: MAX_UPLOAD_FILES = %s MAX_UPLOAD_BYTES = %s BATCH_CONCURRENCY = %s",
    MAX_UPLOAD_FILES,
    MAX_UPLOAD_BYTES,
    BATCH_CONCURRENCY,
)


def make_anthropic_client():
    """Build the shared Anthropic client, or None when it is not configured."""
    if not ANTHROPIC_API_KEY:
        return None
    try:
        client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY)
        logger.debug("[config]: Anthropic client initialized: %s", bool(client))
        return client
    except Exception as e:
        logger.error("[config]: Error initializing Anthropic client: %s", e)
        return None
