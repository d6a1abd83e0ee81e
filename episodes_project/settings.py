from __future__ import annotations

import os
import socket
from pathlib import Path

import dj_database_url
from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env if present (dev convenience)
load_dotenv(BASE_DIR / ".env")

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-insecure-secret")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") not in {"0", "false", "False"}

ALLOWED_HOSTS = ["*"]
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "episodes",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "episodes_project.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "episodes_project.wsgi.application"


database_url = os.environ.get("DATABASE_URL")
if database_url:
    DATABASES = {"default": dj_database_url.parse(database_url, conn_max_age=60)}
else:
    # IMMEDIATE transactions make every atomic block take the SQLite write lock up front,
    # which is what keeps claim_next exclusive when several workers share one file.
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
            "OPTIONS": {
                "transaction_mode": "IMMEDIATE",
                "timeout": 30,
            },
            "TEST": {
                "NAME": BASE_DIR / "test_db.sqlite3",
            },
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-gb"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGIN_URL = "/accounts/login/"


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "episodes": {
            "handlers": ["console"],
            "level": os.environ.get("EPISODES_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}


# --- Episode scheduling settings ---
EPISODES_NODE_ID = os.environ.get("EPISODES_NODE_ID") or socket.gethostname()

# Optional. When set, workers heartbeat into Redis and elect one tick leader that runs
# the Scheduler / sweeper timers. When empty, every worker runs them (they are idempotent).
EPISODES_REDIS_URL = os.environ.get("EPISODES_REDIS_URL", "")

# --- Generation window / retry policy ---
# Generation may start this long before the delivery instant.
EPISODES_GENERATION_WINDOW_SECONDS = int(os.environ.get("EPISODES_GENERATION_WINDOW_SECONDS", str(4 * 3600)))

# No attempt may be scheduled later than (delivery instant - safety margin).
EPISODES_SAFETY_MARGIN_SECONDS = int(os.environ.get("EPISODES_SAFETY_MARGIN_SECONDS", "900"))

EPISODES_MAX_ATTEMPTS = int(os.environ.get("EPISODES_MAX_ATTEMPTS", "3"))

# Comma separated delay (seconds) after attempt 1, 2, ...; the last value is the cap.
EPISODES_BACKOFF_SCHEDULE_SECONDS = os.environ.get("EPISODES_BACKOFF_SCHEDULE_SECONDS", "1800,3600,3600")

# Claim lease. A worker that neither finishes nor renews within this time is presumed dead.
EPISODES_LEASE_SECONDS = int(os.environ.get("EPISODES_LEASE_SECONDS", "900"))

# --- Cost breaker ---
EPISODES_DAILY_COST_CAP = os.environ.get("EPISODES_DAILY_COST_CAP", "50.00")
# Spend allowed on one delivery slot across its attempts; past it a failed attempt is not retried.
EPISODES_EPISODE_COST_CAP = os.environ.get("EPISODES_EPISODE_COST_CAP", "3.00")
EPISODES_LEDGER_TIMEZONE = os.environ.get("EPISODES_LEDGER_TIMEZONE", "UTC")

# Whether a cost-cap rejection consumes one of the job's attempts.
EPISODES_BLOCKED_COUNTS_AS_ATTEMPT = os.environ.get("EPISODES_BLOCKED_COUNTS_AS_ATTEMPT", "0") not in {
    "0",
    "false",
    "False",
}

# --- External generation workflow ---
# "http" talks to EPISODES_WORKFLOW_URL; "dummy" succeeds immediately (local development).
EPISODES_WORKFLOW_BACKEND = os.environ.get("EPISODES_WORKFLOW_BACKEND", "dummy")
EPISODES_WORKFLOW_URL = os.environ.get("EPISODES_WORKFLOW_URL", "")
EPISODES_WORKFLOW_TOKEN = os.environ.get("EPISODES_WORKFLOW_TOKEN", "")
EPISODES_WORKFLOW_POLL_SECONDS = int(os.environ.get("EPISODES_WORKFLOW_POLL_SECONDS", "15"))
EPISODES_WORKFLOW_TIMEOUT_SECONDS = int(os.environ.get("EPISODES_WORKFLOW_TIMEOUT_SECONDS", "3600"))

# --- Delivery notifier ---
# "log" only writes a log line; "webhook" POSTs to EPISODES_NOTIFIER_URL.
EPISODES_NOTIFIER_BACKEND = os.environ.get("EPISODES_NOTIFIER_BACKEND", "log")
EPISODES_NOTIFIER_URL = os.environ.get("EPISODES_NOTIFIER_URL", "")
# Sent as X-Episodes-Token on webhook deliveries when set.
EPISODES_NOTIFIER_TOKEN = os.environ.get("EPISODES_NOTIFIER_TOKEN", "")

# --- Worker timers ---
EPISODES_SCHEDULER_INTERVAL_SECONDS = int(os.environ.get("EPISODES_SCHEDULER_INTERVAL_SECONDS", "300"))
EPISODES_SWEEPER_INTERVAL_SECONDS = int(os.environ.get("EPISODES_SWEEPER_INTERVAL_SECONDS", "60"))
EPISODES_DISPATCH_IDLE_SECONDS = float(os.environ.get("EPISODES_DISPATCH_IDLE_SECONDS", "5"))

# --- Inbound API ---
# If set (non-empty), /api/ endpoints require X-Episodes-Token.
# If empty, they require an authenticated Django session.
EPISODES_API_TOKEN = os.environ.get("EPISODES_API_TOKEN", "")
EPISODES_METRICS_TOKEN = os.environ.get("EPISODES_METRICS_TOKEN", "")
