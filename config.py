# config.py
import os
import logging

# =========================
# Logging
# =========================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("flixshare")

# =========================
# ENV
# =========================
TOKEN = os.getenv("TOKEN")
ADMIN_ID = int(os.getenv("ADMIN_ID", "0"))  # Owner / operator
DB_PATH = os.getenv("DB_PATH", "store.db")

_db_dir = os.path.dirname(DB_PATH) if DB_PATH else ""
if _db_dir:
    os.makedirs(_db_dir, exist_ok=True)

# when set, the Firebase Realtime Database is used instead of sqlite
FIREBASE_URL = os.getenv("FIREBASE_URL", "")
FIREBASE_AUTH = os.getenv("FIREBASE_AUTH", "")

CURRENCY = os.getenv("CURRENCY", "birr")
SERVICE_NAME = os.getenv("SERVICE_NAME", "Netflix")

TELEBIRR_PHONE = os.getenv("TELEBIRR_PHONE", "+251912345678")
CBE_ACCOUNT = os.getenv("CBE_ACCOUNT", "1000123456789")
PAYEE_NAME = os.getenv("PAYEE_NAME", "Bon_Afro")

SUPPORT_USERNAME = os.getenv("SUPPORT_USERNAME", "@YourSupportUsername")
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@example.com")

# =========================
# Codes
# =========================
GMAIL_TOKEN_DIR = os.getenv("GMAIL_TOKEN_DIR", "tokens")
CODE_QUERY = os.getenv("CODE_QUERY", "from:account.netflix.com subject:(sign-in OR code)")
CODE_WINDOW_MINUTES = int(os.getenv("CODE_WINDOW_MINUTES", "15"))
CODE_PATTERN = os.getenv("CODE_PATTERN", r"\b\d{4}\b")
CODE_COOLDOWN_SECONDS = float(os.getenv("CODE_COOLDOWN_SECONDS", "10"))
DEFAULT_CHANCES = int(os.getenv("DEFAULT_CHANCES", "3"))
DEFAULT_PLAN = "1 Month"

# hours between expiry sweeps
EXPIRY_INTERVAL_HOURS = float(os.getenv("EXPIRY_INTERVAL_HOURS", "6"))


def check_env():
    if not TOKEN:
        raise RuntimeError("TOKEN env var is missing")
    if ADMIN_ID == 0:
        raise RuntimeError("ADMIN_ID env var is missing or 0")


def is_admin(uid: int) -> bool:
    return uid == ADMIN_ID


def money(x: float) -> str:
    x = float(x or 0)
    if x.is_integer():
        return f"{int(x)} {CURRENCY}"
    return f"{x:.2f} {CURRENCY}"


def to_tme(x: str) -> str:
    x = (x or "").strip()
    if not x:
        return "https://t.me/"
    if x.startswith("http://") or x.startswith("https://"):
        return x
    if x.startswith("@"):
        return f"https://t.me/{x[1:]}"
    return f"https://t.me/{x}"
