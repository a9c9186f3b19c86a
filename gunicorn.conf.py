"""Gunicorn configuration for the webhook ingestion API.

Usage:
    gunicorn -c gunicorn.conf.py billing_engine.main:app

Event processing runs in separate worker processes
(``python -m billing_engine.worker``); these settings only size the HTTP tier.
"""
from __future__ import annotations

import multiprocessing
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8001")

# Ingestion is I/O bound: one DB insert plus one unit of work per request.
workers = int(os.getenv("GUNICORN_WORKERS", str(multiprocessing.cpu_count() * 2 + 1)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_tmp_dir = "/dev/shm"

# Providers retry deliveries that take too long, so keep request timeouts short.
timeout = int(os.getenv("GUNICORN_TIMEOUT", "30"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "1000"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "50"))

preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"

accesslog = os.getenv("GUNICORN_ACCESSLOG", "-")
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")

proc_name = "billing_engine"
