"""
WSGI config for activehub project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "activehub.settings")

application = get_wsgi_application()
