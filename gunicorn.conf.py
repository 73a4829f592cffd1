"""Gunicorn production config for Railway."""
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"
# Admission, rate-limit and queue state live in process memory: one worker only
workers = 1
threads = 4
timeout = 60
graceful_timeout = 40
max_requests = 0
preload_app = False
accesslog = "-"
errorlog = "-"
loglevel = "info"
