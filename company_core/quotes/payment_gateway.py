import logging
from collections import namedtuple

import stripe
from django.conf import settings

from .exceptions import PaymentProviderError
from .ledger import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

Authorization = namedtuple('Authorization', ['id', 'client_secret'])
AuthorizationDetails = namedtuple(
    'AuthorizationDetails',
    ['id', 'status', 'amount', 'metadata', 'charge_id'],
)

STATUS_SUCCEEDED = 'succeeded'


class StripePaymentGateway:
    """PaymentIntent-backed authorizations.

    Amounts go in and come out as Decimal dollars; the conversion to cents
    happens here and nowhere else.
    """

    def __init__(self, api_key=None, timeout=None, max_retries=None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.timeout = timeout or getattr(settings, 'PAYMENT_PROVIDER_TIMEOUT_SECONDS', 20)
        if max_retries is None:
            max_retries = getattr(settings, 'PAYMENT_PROVIDER_MAX_RETRIES', 2)
        self.max_retries = max_retries
        self._configure()

    def _configure(self):
        stripe.api_key = self.api_key
        stripe.max_network_retries = self.max_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def create_authorization(self, amount, currency, metadata):
        if not self.api_key:
            raise PaymentProviderError("Stripe is not configured (STRIPE_SECRET_KEY is empty).")
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency,
                metadata={key: str(value) for key, value in metadata.items()},
                automatic_payment_methods={'enabled': True},
            )
        except stripe.StripeError as e:
            logger.exception("Stripe PaymentIntent.create failed for metadata %s", metadata)
            raise PaymentProviderError(
                getattr(e, 'user_message', None) or str(e),
                provider_code=getattr(e, 'code', None),
            ) from e
        logger.info("Created PaymentIntent %s for %s %s", intent.id, amount, currency)
        return Authorization(id=intent.id, client_secret=intent.client_secret)

    def retrieve_authorization(self, authorization_id):
        if not self.api_key:
            raise PaymentProviderError("Stripe is not configured (STRIPE_SECRET_KEY is empty).")
        try:
            intent = stripe.PaymentIntent.retrieve(authorization_id)
        except stripe.StripeError as e:
            logger.exception("Stripe PaymentIntent.retrieve failed for %s", authorization_id)
            raise PaymentProviderError(
                getattr(e, 'user_message', None) or str(e),
                provider_code=getattr(e, 'code', None),
            ) from e

        metadata = getattr(intent, 'metadata', None)
        charge = getattr(intent, 'latest_charge', None) or ''
        if not isinstance(charge, str):
            charge = getattr(charge, 'id', '')
        return AuthorizationDetails(
            id=intent.id,
            status=intent.status,
            amount=from_minor_units(getattr(intent, 'amount_received', None) or intent.amount),
            metadata=metadata.to_dict() if metadata is not None else {},
            charge_id=charge,
        )


def get_payment_gateway():
    return StripePaymentGateway()
