import logging

import stripe
from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from quotes.exceptions import OrphanedPaymentError, PaymentNotSettledError
from quotes.payments import AcceptancePaymentCoordinator

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request):
    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    endpoint_secret = settings.STRIPE_WEBHOOK_SECRET

    if not endpoint_secret:
        logger.error("No STRIPE_WEBHOOK_SECRET configured")
        return JsonResponse({'status': 'config error'}, status=500)
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return JsonResponse({'status': 'missing signature'}, status=400)

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except stripe.SignatureVerificationError as e:
        logger.error("Invalid webhook signature: %s", e)
        return JsonResponse({'status': 'invalid signature'}, status=400)
    except ValueError as e:
        logger.error("Invalid webhook payload: %s", e)
        return JsonResponse({'status': 'invalid payload'}, status=400)

    logger.info("Verified Stripe event %s (%s)", event.id, event.type)

    try:
        handle_stripe_event(event)
    except OrphanedPaymentError as e:
        # Operators are already alerted; a redelivery cannot fix it.
        return JsonResponse({'status': 'unreconciled', 'reference': e.reference}, status=200)
    except PaymentNotSettledError as e:
        logger.warning("Webhook for %s arrived before settlement (%s)", e.reference, e.status)
        return JsonResponse({'status': 'pending'}, status=409)
    except Exception:
        logger.exception("Error processing Stripe event %s", event.id)
        return JsonResponse({'status': 'handler error'}, status=500)

    return JsonResponse({'status': 'success'}, status=200)


def handle_stripe_event(event):
    event_type = event.type
    data = event.data.object

    if event_type == 'payment_intent.succeeded':
        handle_payment_intent_succeeded(data)
    elif event_type == 'payment_intent.payment_failed':
        handle_payment_intent_failed(data)
    else:
        logger.debug("Ignoring Stripe event type %s", event_type)


def handle_payment_intent_succeeded(intent):
    result = AcceptancePaymentCoordinator().confirm_payment(intent.id)
    logger.info(
        "Webhook confirmation for %s -> invoice %s (new=%s)",
        intent.id,
        result.invoice.invoice_number,
        result.created,
    )


def handle_payment_intent_failed(intent):
    error = getattr(intent, 'last_payment_error', None)
    metadata = getattr(intent, 'metadata', None)
    logger.warning(
        "PaymentIntent %s failed: %s (metadata=%s)",
        intent.id,
        getattr(error, 'message', None) or 'unknown error',
        metadata.to_dict() if metadata is not None else {},
    )
