# backend/gunicorn_conf.py

# Gunicorn config file
# Run with: gunicorn -c gunicorn_conf.py iqflow.main:app

# Live onboarding sessions are held in process memory, so a single worker
# serves all of them. Persisted snapshots live in Redis and survive restarts.
bind = "0.0.0.0:8000"
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
graceful_timeout = 30

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
# Access and error logs go to stdout/stderr; the app configures structlog itself.
accesslog = "-"
errorlog = "-"
loglevel = "info"
