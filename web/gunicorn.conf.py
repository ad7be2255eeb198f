import os


def cpu():
    return max(1, (os.cpu_count() or 1))


# Worker processes
workers = int(os.getenv("GUNI_WORKERS", min(max(2, cpu() * 2), 8)))

# Threads per worker (gateway calls are blocking IO)
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# must exceed GATEWAY_SUBMIT_TIMEOUT_SECS
timeout = int(os.getenv("GUNI_TIMEOUT", "30"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# app logs are JSON via Django LOGGING
accesslog = os.getenv("GUNI_ACCESSLOG", "-")
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
wsgi_app = "config.wsgi:application"
