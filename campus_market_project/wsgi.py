"""
WSGI config for campus_market_project.

Served by gunicorn (see gunicorn.conf.py at the repository root).
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "campus_market_project.settings")

application = get_wsgi_application()
