import os

bind = "0.0.0.0:8000"
# Live square updates are fanned out in process memory, so a single worker
# process serves every stream; threads carry the concurrent requests.
workers = int(os.getenv("GUNICORN_WORKERS", "1"))
worker_class = "gthread"
threads = int(os.getenv("GUNICORN_THREADS", "32"))
# Streams close themselves after RAFFLE_SSE_MAX_SECONDS
timeout = int(os.getenv("GUNICORN_TIMEOUT", "330"))
keepalive = 2
max_requests = 1000
max_requests_jitter = 50
preload_app = False

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")

# Process naming
proc_name = "raffle_service"
