# backend/gunicorn_conf.py

# Gunicorn config file: gunicorn -c gunicorn_conf.py
import os

wsgi_app = "telepharma.main:app"

bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
# Conversation locks live in-process, so a contact's messages must reach one
# worker. Scale out with sticky routing, not more workers here.
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = "info"
