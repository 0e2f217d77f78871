import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orders.db")
ORDER_STORE = os.getenv("ORDER_STORE", "sql").lower()  # sql | memory

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))

# amounts are integers in minor currency units (cents)
MIN_CHARGE_AMOUNT = int(os.getenv("MIN_CHARGE_AMOUNT", "50"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd").lower()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def webhook_secret():
    # read per request so a rotated secret is picked up without restart
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def jwt_secret():
    return os.getenv("JWT_SECRET")
