import os

# Gunicorn config variables
bind = os.getenv("KEYROOM_BIND", "127.0.0.1:8000")
# Room registry is in-process; keep a single worker.
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 60
keepalive = 5
# No max_requests; the worker must not be recycled.
accesslog = os.getenv("KEYROOM_ACCESS_LOG", "-")
errorlog = os.getenv("KEYROOM_ERROR_LOG", "-")
loglevel = os.getenv("LOG_LEVEL", "info").lower()
daemon = False
wsgi_app = "keyroom.main:app"
