"""Django settings for the checkout reconciliation service.

Values come from environment variables so the same image runs against a
sandbox or production gateway account.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.gateways",
    "apps.orders",
    "apps.monitoring",
]

MIDDLEWARE = [
    "edge.middleware.RequestIdMiddleware",
    "edge.middleware.ApiSizeLimitMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.getenv("POSTGRES_DB", "checkout"),
        "USER": os.getenv("POSTGRES_USER", "checkout"),
        "PASSWORD": os.getenv("POSTGRES_PASSWORD", "checkout"),
        "HOST": os.getenv("POSTGRES_HOST", "checkout-db"),
        "PORT": os.getenv("POSTGRES_PORT", "5432"),
        "CONN_MAX_AGE": int(os.getenv("POSTGRES_CONN_MAX_AGE", "60")),
        "OPTIONS": {"connect_timeout": 5},
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_THROTTLE_RATES": {
        "checkout_submit": os.getenv("THROTTLE_CHECKOUT_SUBMIT", "30/min"),
        "orders_status": os.getenv("THROTTLE_ORDERS_STATUS", "20/min"),
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "60/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "120/min"),
    },
}

# ---- Gateway integration ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", True)
GATEWAY_PROVIDER = os.getenv("GATEWAY_PROVIDER", "mercado_pago")
GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.mercadopago.com")
GATEWAY_SUBMIT_TIMEOUT_SECS = float(os.getenv("GATEWAY_SUBMIT_TIMEOUT_SECS", "10"))
GATEWAY_STATUS_TIMEOUT_SECS = float(os.getenv("GATEWAY_STATUS_TIMEOUT_SECS", "5"))

HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# Public URL the gateway posts notifications to; empty disables it.
WEBHOOK_PUBLIC_URL = os.getenv("WEBHOOK_PUBLIC_URL", "")

# ---- Checkout ----
CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "BRL")
CHECKOUT_PIX_PATH = os.getenv("CHECKOUT_PIX_PATH", "/pix/{order_id}")
CHECKOUT_CONFIRMATION_PATH = os.getenv("CHECKOUT_CONFIRMATION_PATH", "/obrigado/{order_id}")
CHECKOUT_STALE_PENDING_MINUTES = int(os.getenv("CHECKOUT_STALE_PENDING_MINUTES", "5"))

API_MAX_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "edge.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django.request": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}
