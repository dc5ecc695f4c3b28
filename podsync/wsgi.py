"""
WSGI config for podsync project.
"""
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'podsync.settings')

application = get_wsgi_application()
