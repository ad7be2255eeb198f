from .base import *  # noqa: F401,F403

DEBUG = False

SECRET_KEY = "test-secret-key"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

ALLOWED_HOSTS = ["testserver", "localhost"]

USE_HTTP_ADAPTERS = False
WEBHOOK_PUBLIC_URL = "https://checkout.example.com/api/webhooks/mercadopago/"

REST_FRAMEWORK = {
    **REST_FRAMEWORK,  # noqa: F405
    "DEFAULT_THROTTLE_RATES": {
        "checkout_submit": "1000/min",
        "orders_status": "1000/min",
        "orders_list": "1000/min",
        "orders_detail": "1000/min",
    },
}

CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}

HTTP_RETRY_BACKOFF_BASE = 0.0
HTTP_RETRY_MAX_SLEEP = 0.0
