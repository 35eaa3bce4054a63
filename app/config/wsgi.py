"""
WSGI config for the settlement service.

Exposes the WSGI callable as a module-level variable named `application`,
served by any WSGI server (gunicorn in the Docker image).

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/wsgi/
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
