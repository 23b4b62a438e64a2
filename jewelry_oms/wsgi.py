"""
WSGI config for the Jewelry OMS project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'jewelry_oms.settings')

application = get_wsgi_application()
