"""
Courier (Shiprocket) Webhook Helpers

Shared by the forward shipment webhooks (orders app) and the reverse pickup
webhook (returns app):
    - Webhook authentication (HMAC-SHA256 of the raw JSON body)
    - Parsing the courier's timestamp formats
    - The always-200 acknowledgement the courier expects
"""

import enum
import hashlib
import hmac
import logging
from datetime import datetime

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger('orders')

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, OPTIONS, HEAD',
    'Access-Control-Allow-Headers': 'Content-Type, anx-api-key, X-Shiprocket-Signature, Authorization',
}

# Formats seen in courier payloads: "23 05 2023 11:43:52" and "2023-05-23 11:43:52"
COURIER_DATETIME_FORMATS = [
    '%d %m %Y %H:%M:%S',
    '%Y-%m-%d %H:%M:%S',
    '%d-%m-%Y %H:%M:%S',
    '%Y-%m-%d',
    '%d %m %Y',
]


class WebhookAuthMode(enum.Enum):
    ENFORCED = 'enforced'
    DISABLED = 'disabled'


class SignatureVerificationError(Exception):
    """Webhook payload failed the HMAC check."""


def get_webhook_auth_mode():
    raw = str(settings.SHIPROCKET_WEBHOOK.get('AUTH_MODE', 'enforced')).strip().lower()
    try:
        return WebhookAuthMode(raw)
    except ValueError:
        logger.error(f"Unknown SHIPROCKET_WEBHOOK AUTH_MODE '{raw}', enforcing signatures")
        return WebhookAuthMode.ENFORCED


def sign_payload(raw_body, secret):
    """Hex HMAC-SHA256 digest of the raw request body."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body, signature):
    """
    Raise SignatureVerificationError unless the signature matches.

    In DISABLED mode nothing is checked. In ENFORCED mode a missing secret
    fails closed rather than letting every payload through.
    """
    mode = get_webhook_auth_mode()
    if mode is WebhookAuthMode.DISABLED:
        logger.warning('Courier webhook signature check is DISABLED - do not run this in production')
        return

    secret = settings.SHIPROCKET_WEBHOOK.get('SECRET')
    if not secret:
        raise SignatureVerificationError('Webhook secret is not configured')
    if not signature:
        raise SignatureVerificationError('Missing webhook signature')

    expected = sign_payload(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip()):
        raise SignatureVerificationError('Invalid webhook signature')


def parse_courier_datetime(value):
    """Parse a courier timestamp into an aware datetime, or None."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        parsed = parse_datetime(text.replace(' ', 'T', 1)) if '-' in text[:5] else None
        if parsed is None:
            for fmt in COURIER_DATETIME_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
    if parsed is None:
        logger.warning(f"Unparseable courier timestamp: {value!r}")
        return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def parse_status_code(*candidates):
    """First candidate that is a usable integer status id."""
    for value in candidates:
        if value in (None, ''):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def acknowledge(success, message, **extra):
    """
    Courier webhooks are always answered with HTTP 200.
    Any non-200 makes the courier retry and eventually disable the webhook.
    """
    body = {'success': success, 'message': message}
    body.update(extra)
    return Response(body, status=status.HTTP_200_OK, headers=CORS_HEADERS)


def preflight():
    return Response(status=status.HTTP_200_OK, headers=CORS_HEADERS)
