"""
WSGI config for the quote portal.

It exposes the WSGI callable as a module-level variable named ``application``.
"""

import logging
import os

from django.conf import settings
from django.core.wsgi import get_wsgi_application
from whitenoise import WhiteNoise

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'portal_site.settings')

logger = logging.getLogger(__name__)

django_application = get_wsgi_application()

# Log whether the payment processor is configured. We only log presence,
# never the key itself.
logger.info(
    "STRIPE_SECRET_KEY configured=%s webhook_secret configured=%s",
    bool(getattr(settings, "STRIPE_SECRET_KEY", None)),
    bool(getattr(settings, "STRIPE_WEBHOOK_SECRET", None)),
)

# Serve static assets from the process itself (admin + DRF browsable API).
application = WhiteNoise(django_application)

static_root = getattr(settings, 'STATIC_ROOT', None)
if static_root:
    application.add_files(static_root, prefix='static/')
