"""Gunicorn configuration for production deployment.

Reads the same environment variables as core/config.py.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os
import multiprocessing

bind = f"{os.getenv('HOST', '0.0.0.0')}:{os.getenv('PORT', '4000')}"
debug = os.getenv("DEBUG", "false").lower() == "true"

# WORKERS=0 means auto (cpu + 1). An in-memory SQLite database is per process,
# so it forces a single worker.
workers_count = int(os.getenv("WORKERS", "0"))
if ":memory:" in os.getenv("DATABASE_URL", ""):
    workers = 1
else:
    workers = workers_count if workers_count > 0 else (multiprocessing.cpu_count() + 1)
worker_class = "uvicorn.workers.UvicornWorker"

# An execute request stays open through its delay nodes, a generate request
# through the LLM call; the worker timeout has to outlast both.
_longest_request = max(float(os.getenv("EXECUTION_MAX_DELAY_SECONDS", "300")),
                       float(os.getenv("LLM_TIMEOUT", "60")))
timeout = int(os.getenv("GUNICORN_TIMEOUT", str(int(_longest_request) + 60)))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

accesslog = None if debug else "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "INFO").lower()

proc_name = "flowforge-backend"

# Each worker opens its own engine and starts its own broadcaster in the lifespan
preload_app = False
