import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()  # Load .env file if present

BASE_DIR = Path(__file__).resolve().parents[2]
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in {"1", "true", "yes"}
raw_hosts = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1")
ALLOWED_HOSTS = [h.strip() for h in raw_hosts.split(",") if h.strip()]


SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

INSTALLED_APPS = [
    # Django Admin Deps
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Our apps and 3rd party
    "custody.apps.ledger.apps.LedgerConfig",
    "custody.apps.audit.apps.AuditConfig",
    "custody.apps.tokens.apps.TokensConfig",
    "whitenoise.runserver_nostatic",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "custody.urls"
TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ]
        },
    }
]
WSGI_APPLICATION = "custody.wsgi.application"

# Postgres by default; override with dev/test settings as needed
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "HOST": os.getenv("DB_HOST", "localhost"),
        "PORT": os.getenv("DB_PORT", "5432"),
        "NAME": os.getenv("DB_NAME", "custody_db"),
        "USER": os.getenv("DB_USER", "custody_user"),
        "PASSWORD": os.getenv("DB_PASSWORD", "custody_password"),
    }
}

STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"},
}

DATABASE_URL = os.getenv("DATABASE_URL")
if DATABASE_URL:
    from urllib.parse import urlparse

    parsed = urlparse(DATABASE_URL)
    DATABASES["default"].update(
        {
            "NAME": parsed.path.lstrip("/"),
            "USER": parsed.username,
            "PASSWORD": parsed.password,
            "HOST": parsed.hostname,
            "PORT": parsed.port or "5432",
            "OPTIONS": {"sslmode": os.getenv("DB_SSLMODE", "require")},
        }
    )

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Celery configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_DEFAULT_QUEUE = os.getenv("CELERY_TASK_DEFAULT_QUEUE", "custody")
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_TIME_LIMIT = int(os.getenv("CELERY_TASK_TIME_LIMIT", "60"))

CELERY_BROKER_CONNECTION_RETRY_ON_STARTUP = True

CELERY_BEAT_SCHEDULE = {
    "reconcile-redemption-receipts": {
        "task": "custody.apps.audit.tasks.reconcile_redemption_receipts",
        "schedule": float(os.getenv("RECONCILE_INTERVAL_SECONDS", "60")),
    },
}

# ==============================================================================
# Logging
# ==============================================================================

CUSTODY_LOG_LEVEL = os.getenv("CUSTODY_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "custody": {
            "handlers": ["console"],
            "level": CUSTODY_LOG_LEVEL,
            "propagate": False,
        },
    },
}

# Echo internal exception text back to API callers (never in production)
CUSTODY_DEBUG_ERRORS = os.getenv("CUSTODY_DEBUG_ERRORS", "false").lower() in {
    "1",
    "true",
    "yes",
}

# ==============================================================================
# Web3 / Blockchain Configuration
# ==============================================================================

# Treasury wallet (source of every redemption transfer)
TREASURY_ADDRESS = os.getenv("TREASURY_ADDRESS", "")
TREASURY_PRIVATE_KEY = os.getenv("TREASURY_PRIVATE_KEY", "")

# Chains a redemption may settle on. USDT uses 6 decimals on both.
SUPPORTED_CHAINS = {
    1: {
        "name": "Ethereum",
        "rpc_url": os.getenv("ETHEREUM_RPC_URL", "https://ethereum-rpc.publicnode.com"),
        "usdt_address": os.getenv(
            "USDT_ETHEREUM_ADDRESS", "0xdAC17F958D2ee523a2206206994597C13D831ec7"
        ),
        "decimals": 6,
        "explorer": "https://etherscan.io",
    },
    8453: {
        "name": "Base",
        "rpc_url": os.getenv("BASE_RPC_URL", "https://mainnet.base.org"),
        "usdt_address": os.getenv(
            "USDT_BASE_ADDRESS", "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2"
        ),
        "decimals": 6,
        "explorer": "https://basescan.org",
    },
}

# ABI Paths
USDT_ABI_PATH = BASE_DIR / "custody" / "onchain" / "abi" / "USDT.json"

# Submission (gas estimation + broadcast) must finish inside this window
TRANSFER_TIMEOUT_SECONDS = float(os.getenv("TRANSFER_TIMEOUT_SECONDS", "15"))
# 0 = return right after broadcast; the reconciliation task fills receipts
TRANSFER_RECEIPT_TIMEOUT_SECONDS = float(
    os.getenv("TRANSFER_RECEIPT_TIMEOUT_SECONDS", "0")
)
TRANSFER_GAS_MULTIPLIER = float(os.getenv("TRANSFER_GAS_MULTIPLIER", "1.2"))
TRANSFER_MAX_RETRIES = int(os.getenv("TRANSFER_MAX_RETRIES", "3"))
# Operators may only resolve a pending redemption older than this; it must
# exceed the submission window plus the receipt wait
REDEMPTION_PENDING_TIMEOUT_SECONDS = float(
    os.getenv("REDEMPTION_PENDING_TIMEOUT_SECONDS", "300")
)
# Force every redemption through the simulated executor
TRANSFER_SIMULATE_ONLY = os.getenv("TRANSFER_SIMULATE_ONLY", "false").lower() in {
    "1",
    "true",
    "yes",
}

# ==============================================================================
# Ledger
# ==============================================================================

DEPOSIT_SAVE_MAX_ATTEMPTS = int(os.getenv("DEPOSIT_SAVE_MAX_ATTEMPTS", "3"))
DEPOSIT_SAVE_BACKOFF_SECONDS = float(os.getenv("DEPOSIT_SAVE_BACKOFF_SECONDS", "0.05"))

# Seed value used by `manage.py seed_reserves` for chains without a reserve row
INITIAL_RESERVE_USDT = os.getenv("INITIAL_RESERVE_USDT", "1000000")
