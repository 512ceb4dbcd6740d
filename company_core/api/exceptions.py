import logging

from django.core.exceptions import ObjectDoesNotExist, ValidationError as DjangoValidationError
from rest_framework import exceptions, status
from rest_framework.response import Response
from rest_framework.serializers import as_serializer_error
from rest_framework.views import exception_handler

from quotes.exceptions import OrphanedPaymentError, PaymentNotSettledError, PaymentProviderError

logger = logging.getLogger(__name__)


def _view_name(context):
    view = context.get('view')
    return view.__class__.__name__ if view is not None else 'unknown view'


def portal_exception_handler(exc, context):
    """Map service-layer exceptions onto HTTP responses.

    Anything not listed here falls through to DRF's default handler.
    """
    if isinstance(exc, DjangoValidationError):
        exc = exceptions.ValidationError(detail=as_serializer_error(exc))
    elif isinstance(exc, ObjectDoesNotExist):
        exc = exceptions.NotFound()

    if isinstance(exc, PaymentProviderError):
        logger.error(
            "Payment provider error in %s (code=%s): %s",
            _view_name(context),
            exc.provider_code,
            exc,
        )
        return Response(
            {'error': 'payment_provider_unavailable', 'detail': str(exc), 'retryable': True},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    if isinstance(exc, PaymentNotSettledError):
        logger.warning("Payment %s not settled yet (status=%s) in %s", exc.reference, exc.status, _view_name(context))
        return Response(
            {
                'error': 'payment_not_settled',
                'reference': exc.reference,
                'status': exc.status,
                'retryable': True,
            },
            status=status.HTTP_409_CONFLICT,
        )

    if isinstance(exc, OrphanedPaymentError):
        # Already logged at CRITICAL and mailed to operators by the coordinator.
        return Response(
            {
                'error': 'payment_unreconciled',
                'reference': exc.reference,
                'detail': "Your payment was received but needs manual review. Our team has been notified.",
                'retryable': False,
            },
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    return exception_handler(exc, context)
