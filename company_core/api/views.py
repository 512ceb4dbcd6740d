# api/views.py
import logging

from django.conf import settings
from django.db import transaction
from django.shortcuts import get_object_or_404
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view, authentication_classes, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from quotes.exceptions import QuoteStateError
from quotes.lifecycle import (
    create_quote,
    delete_quote,
    get_quote_by_access_token,
    record_response,
    record_view,
    transition_to_sent,
    update_quote,
    update_quote_financials,
)
from quotes.line_items import (
    create_line_item,
    delete_line_item,
    get_quote_for_display,
    list_line_items,
    recompute_totals,
    update_line_item,
)
from quotes.models import Project, Quote, QuoteLineItem, QuoteResponse
from quotes.notifications import public_quote_url
from quotes.payments import AcceptancePaymentCoordinator, clean_customer_info
from .serializers import (
    InstallmentRequestSerializer,
    InvoiceSerializer,
    PaymentConfirmSerializer,
    ProjectSerializer,
    PublicQuoteSerializer,
    QuoteLineItemSerializer,
    QuoteResponseRequestSerializer,
    QuoteSerializer,
)

logger = logging.getLogger(__name__)


def _payload(request):
    data = request.data
    if hasattr(data, 'dict'):
        return data.dict()
    return dict(data)


def _client_ip(request):
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def _authorization_payload(handle):
    return {
        'authorization_id': handle.id,
        'client_secret': handle.client_secret,
        'amount': str(handle.amount),
        'currency': getattr(settings, 'PAYMENT_CURRENCY', 'usd'),
        'publishable_key': getattr(settings, 'STRIPE_PUBLISHABLE_KEY', ''),
    }


# ------------------------------
# Staff endpoints
# ------------------------------

class QuoteViewSet(viewsets.ModelViewSet):
    serializer_class = QuoteSerializer

    def get_queryset(self):
        return Quote.objects.filter(user=self.request.user).prefetch_related('line_items')

    def retrieve(self, request, *args, **kwargs):
        quote = get_quote_for_display(self.get_object())
        return Response(self.get_serializer(quote).data)

    def create(self, request, *args, **kwargs):
        quote = create_quote(request.user, _payload(request))
        return Response(self.get_serializer(quote).data, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        quote = update_quote(self.get_object().pk, _payload(request))
        return Response(self.get_serializer(quote).data)

    def destroy(self, request, *args, **kwargs):
        delete_quote(self.get_object().pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=['post'])
    def send(self, request, pk=None):
        quote, access_token = transition_to_sent(self.get_object().pk)
        data = self.get_serializer(quote).data
        data['public_url'] = public_quote_url(access_token.token)
        return Response(data)

    @action(detail=True, methods=['patch'])
    def financials(self, request, pk=None):
        quote = update_quote_financials(self.get_object().pk, _payload(request))
        return Response(self.get_serializer(quote).data)

    @action(detail=True, methods=['post'])
    def recompute(self, request, pk=None):
        quote = self.get_object()
        if quote.is_frozen:
            raise QuoteStateError({'status': ["Accepted quotes keep the totals they were accepted with."]})
        totals = recompute_totals(quote.pk)
        return Response({name: str(value) for name, value in totals._asdict().items()})

    @action(detail=True, methods=['get', 'post'], url_path='line-items')
    def line_items(self, request, pk=None):
        quote = self.get_object()
        if request.method == 'POST':
            item = create_line_item(quote.pk, _payload(request))
            return Response(QuoteLineItemSerializer(item).data, status=status.HTTP_201_CREATED)
        return Response(QuoteLineItemSerializer(list_line_items(quote.pk), many=True).data)


@api_view(["PATCH", "DELETE"])
def line_item_detail(request, pk):
    item = get_object_or_404(QuoteLineItem, pk=pk, quote__user=request.user)
    if request.method == "DELETE":
        delete_line_item(item.pk)
        return Response(status=204)
    item = update_line_item(item.pk, _payload(request))
    return Response(QuoteLineItemSerializer(item).data)


@api_view(["POST"])
def project_installments(request, pk):
    project = get_object_or_404(Project, pk=pk, user=request.user)
    serializer = InstallmentRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    invoice, handle = AcceptancePaymentCoordinator().request_installment(
        project.pk,
        serializer.validated_data['invoice_type'],
        description=serializer.validated_data['description'] or None,
    )
    return Response({
        'invoice': InvoiceSerializer(invoice).data,
        'payment': _authorization_payload(handle),
    }, status=201)


# ------------------------------
# Public (access token) endpoints
# ------------------------------

@api_view(["GET"])
@authentication_classes([])
@permission_classes([AllowAny])
def public_quote_detail(request, token):
    quote = get_quote_by_access_token(token)
    if quote is None:
        return Response({"error": "not_found"}, status=404)
    quote = get_quote_for_display(record_view(quote.pk))
    return Response(PublicQuoteSerializer(quote).data)


@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
def public_quote_respond(request, token):
    """Customer accepts or declines a quote.

    Request JSON: { "action": "accepted" | "declined", "customer_name", "customer_email", "message" }
    Accepting returns the down payment authorization for the payment form.
    """
    quote = get_quote_by_access_token(token)
    if quote is None:
        return Response({"error": "not_found"}, status=404)

    serializer = QuoteResponseRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    customer_info = {
        'name': data['customer_name'] or quote.customer_name,
        'email': data['customer_email'] or quote.customer_email,
        'phone': data['customer_phone'] or quote.customer_phone,
    }
    if data['action'] == QuoteResponse.ACTION_ACCEPTED:
        clean_customer_info(customer_info)

    # A failed authorization must not leave the acceptance recorded.
    with transaction.atomic():
        quote, _ = record_response(quote.pk, data['action'], {
            'customer_name': customer_info['name'],
            'customer_email': customer_info['email'],
            'message': data['message'],
            'ip_address': _client_ip(request),
            'user_agent': request.META.get('HTTP_USER_AGENT', ''),
        })
        handle = None
        if data['action'] == QuoteResponse.ACTION_ACCEPTED:
            handle = AcceptancePaymentCoordinator().initiate_acceptance(quote.pk, customer_info)

    payload = {'quote': PublicQuoteSerializer(quote).data}
    if handle is not None:
        payload['payment'] = _authorization_payload(handle)
    return Response(payload)


@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
def public_payment_confirm(request):
    serializer = PaymentConfirmSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    result = AcceptancePaymentCoordinator().confirm_payment(serializer.validated_data['reference'])
    return Response({
        'created': result.created,
        'project': ProjectSerializer(result.project).data,
        'invoice': InvoiceSerializer(result.invoice).data,
    }, status=201 if result.created else 200)
