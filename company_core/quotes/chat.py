import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


def quote_channel_id(quote):
    return f"quote-{quote.pk}"


def open_quote_conversation(quote):
    """Ask the chat service for a conversation channel tied to ``quote``.

    Returns the channel id, or None when the service is not configured or the
    call fails. Never raises: sending a quote must not depend on chat.
    """
    base_url = getattr(settings, 'CHAT_SERVICE_URL', '')
    if not base_url:
        logger.debug("CHAT_SERVICE_URL not configured; skipping channel for %s", quote.quote_number)
        return None

    channel_id = quote_channel_id(quote)
    payload = {
        'channel_id': channel_id,
        'name': f"{quote.quote_number} - {quote.title}",
        'members': [
            {'email': quote.customer_email, 'name': quote.customer_name, 'role': 'customer'},
            {'email': quote.user.email, 'name': quote.user.get_full_name() or quote.user.username, 'role': 'staff'},
        ],
        'metadata': {'quote_id': str(quote.pk), 'quote_number': quote.quote_number},
    }
    headers = {}
    api_key = getattr(settings, 'CHAT_SERVICE_API_KEY', '')
    if api_key:
        headers['Authorization'] = f"Bearer {api_key}"

    try:
        response = requests.post(
            f"{base_url.rstrip('/')}/channels",
            json=payload,
            headers=headers,
            timeout=getattr(settings, 'CHAT_SERVICE_TIMEOUT_SECONDS', 10),
        )
        response.raise_for_status()
    except requests.RequestException:
        logger.exception("Failed to open chat channel for quote %s", quote.quote_number)
        return None

    try:
        data = response.json()
    except ValueError:
        data = {}
    return data.get('id') or channel_id
