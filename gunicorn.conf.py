# gunicorn.conf.py
import multiprocessing
import os

from dotenv import load_dotenv

load_dotenv()

# Network
bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:8000")
forwarded_allow_ips = os.environ.get("GUNICORN_FORWARDED_ALLOW_IPS", "127.0.0.1")

# Workers
# Each open chat screen sends a request every 3s (thread) and every 5s
# (conversation list).
workers = int(os.environ.get("GUNICORN_WORKERS", min(multiprocessing.cpu_count() * 2 + 1, 8)))
threads = int(os.environ.get("GUNICORN_THREADS", 8))
worker_class = "gthread"
keepalive = 10
# Listing uploads carry up to five images
timeout = int(os.environ.get("GUNICORN_TIMEOUT", 60))
graceful_timeout = 30
max_requests = 2000
max_requests_jitter = 200

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(M)sms'

# App
wsgi_app = "campus_market_project.wsgi:application"
