import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _load_dotenv(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        os.environ.setdefault(key, value)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


_load_dotenv(BASE_DIR / ".env")

DEBUG = _env_bool("DEBUG", "False")

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY") or os.environ.get("SECRET_KEY", "change-me")

ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("ALLOWED_HOSTS", "*").split(",")
    if host.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "accounts",
    "mail",
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

ROOT_URLCONF = "inbox_hub.urls"

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
            ]
        },
    }
]

WSGI_APPLICATION = "inbox_hub.wsgi.application"

# Database configuration using individual DB_* environment variables;
# falls back to a local SQLite file for development and tests.
if all(
    os.environ.get(key)
    for key in ["DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD"]
):
    db_config = {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME"),
        "USER": os.environ.get("DB_USER"),
        "PASSWORD": os.environ.get("DB_PASSWORD"),
        "HOST": os.environ.get("DB_HOST"),
        "PORT": os.environ.get("DB_PORT", "5432"),
    }
    sslmode = os.environ.get("DB_SSLMODE")
    if sslmode:
        db_config["OPTIONS"] = {"sslmode": sslmode.lower()}
    DATABASES = {"default": db_config}
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

# Sync locks and concurrency slots live in the shared cache so every worker
# process sees the same leases. Local memory is only suitable for a single process.
REDIS_URL = os.environ.get("REDIS_URL", "")
if REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": REDIS_URL,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "inbox-hub",
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"
    },
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-us"

TIME_ZONE = "UTC"

USE_I18N = True

USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticated"],
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.LimitOffsetPagination",
    "PAGE_SIZE": 50,
}

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get(
    "CELERY_RESULT_BACKEND", "redis://localhost:6379/0"
)
# Bounded worker pool: one task = one account sync attempt, no prefetching beyond it.
CELERY_WORKER_CONCURRENCY = int(os.environ.get("CELERY_WORKER_CONCURRENCY", "4"))
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_ACKS_LATE = True

# Google OAuth Configuration (token refresh only; consent flow lives elsewhere)
GOOGLE_OAUTH_CLIENT_ID = os.environ.get("GOOGLE_OAUTH_CLIENT_ID", "")
GOOGLE_OAUTH_CLIENT_SECRET = os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", "")

# Microsoft OAuth Configuration
MICROSOFT_OAUTH_CLIENT_ID = os.environ.get("MICROSOFT_OAUTH_CLIENT_ID", "")
MICROSOFT_OAUTH_CLIENT_SECRET = os.environ.get("MICROSOFT_OAUTH_CLIENT_SECRET", "")
MICROSOFT_OAUTH_TENANT_ID = os.environ.get("MICROSOFT_OAUTH_TENANT_ID", "common")

# Email sync: provider paging and timeouts
EMAIL_SYNC_PAGE_SIZE = int(os.environ.get("EMAIL_SYNC_PAGE_SIZE", "100"))
EMAIL_PROVIDER_TIMEOUT_SECONDS = int(os.environ.get("EMAIL_PROVIDER_TIMEOUT_SECONDS", "30"))
EMAIL_SYNC_FOLDERS = [
    f.strip()
    for f in os.environ.get("EMAIL_SYNC_FOLDERS", "inbox,sent").split(",")
    if f.strip()
]

# Email sync: per-cycle hard caps on new rows, enforced before every page request.
EMAIL_SYNC_MAX_RECEIVED_PER_CYCLE = int(
    os.environ.get("EMAIL_SYNC_MAX_RECEIVED_PER_CYCLE", "5000")
)
EMAIL_SYNC_MAX_SENT_PER_CYCLE = int(os.environ.get("EMAIL_SYNC_MAX_SENT_PER_CYCLE", "5000"))
# Optional per-provider overrides, e.g. {"imap": {"inbound": 1000, "outbound": 1000}}
EMAIL_SYNC_PROVIDER_CAPS = {}

# Email sync: scheduling and concurrency
EMAIL_SYNC_MAX_CONCURRENT = int(os.environ.get("EMAIL_SYNC_MAX_CONCURRENT", "8"))
EMAIL_SYNC_MIN_POLL_INTERVAL_SECONDS = int(
    os.environ.get("EMAIL_SYNC_MIN_POLL_INTERVAL_SECONDS", "60")
)
EMAIL_SYNC_DEFAULT_POLL_INTERVAL_SECONDS = int(
    os.environ.get("EMAIL_SYNC_DEFAULT_POLL_INTERVAL_SECONDS", "300")
)
EMAIL_SYNC_LOCK_LEASE_SECONDS = int(os.environ.get("EMAIL_SYNC_LOCK_LEASE_SECONDS", "300"))

# Email sync: retry policy
EMAIL_SYNC_TRANSIENT_MAX_ATTEMPTS = int(os.environ.get("EMAIL_SYNC_TRANSIENT_MAX_ATTEMPTS", "3"))
EMAIL_SYNC_TRANSIENT_BACKOFF_SECONDS = float(
    os.environ.get("EMAIL_SYNC_TRANSIENT_BACKOFF_SECONDS", "2")
)
EMAIL_SYNC_RETRY_BASE_SECONDS = int(os.environ.get("EMAIL_SYNC_RETRY_BASE_SECONDS", "60"))
EMAIL_SYNC_RETRY_MAX_SECONDS = int(os.environ.get("EMAIL_SYNC_RETRY_MAX_SECONDS", "3600"))

# Content cache eviction
CONTENT_CACHE_SHORT_TTL_HOURS = int(os.environ.get("CONTENT_CACHE_SHORT_TTL_HOURS", "48"))
CONTENT_CACHE_LONG_TTL_DAYS = int(os.environ.get("CONTENT_CACHE_LONG_TTL_DAYS", "7"))
CONTENT_CACHE_LOW_USE_THRESHOLD = int(os.environ.get("CONTENT_CACHE_LOW_USE_THRESHOLD", "3"))

# Email sync audit: log each sync decision (page fetched, rows written, cursor advanced).
# Set to false in production to keep logs quiet.
EMAIL_SYNC_AUDIT_LOGGING = _env_bool("EMAIL_SYNC_AUDIT_LOGGING", "true")

# Logging Configuration
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {asctime} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
            "stream": "ext://sys.stdout",
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
            "stream": "ext://sys.stderr",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.environ.get("DJANGO_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "django.request": {
            "handlers": ["error_console"],
            "level": "ERROR",
            "propagate": False,
        },
        "django.db.backends": {
            "handlers": ["console"],
            "level": os.environ.get("DB_LOG_LEVEL", "WARNING"),
            "propagate": False,
        },
        # Application loggers
        "accounts": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "mail": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "mail.sync_audit": {
            "handlers": ["console"],
            "level": "INFO" if EMAIL_SYNC_AUDIT_LOGGING else "WARNING",
            "propagate": False,
        },
        # Third-party loggers
        "celery": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
