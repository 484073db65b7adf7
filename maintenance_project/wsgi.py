"""WSGI config for maintenance_project."""

from __future__ import annotations

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "maintenance_project.settings")

application = get_wsgi_application()
