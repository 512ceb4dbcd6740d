# api/urls.py
from django.urls import path, include
from rest_framework.authtoken.views import obtain_auth_token
from rest_framework.routers import DefaultRouter

from .views import (
    QuoteViewSet,
    line_item_detail,
    project_installments,
    public_payment_confirm,
    public_quote_detail,
    public_quote_respond,
)
from .webhooks import stripe_webhook

router = DefaultRouter()
router.register(r'quotes', QuoteViewSet, basename='quote')

urlpatterns = [
    path('auth/login-token/', obtain_auth_token, name='api_token_auth'),

    path('line-items/<int:pk>/', line_item_detail, name='line_item_detail'),
    path('projects/<int:pk>/installments/', project_installments, name='project_installments'),

    # Customer-facing, keyed by access token
    path('public/quotes/<str:token>/', public_quote_detail, name='public_quote_detail'),
    path('public/quotes/<str:token>/respond/', public_quote_respond, name='public_quote_respond'),
    path('public/payments/confirm/', public_payment_confirm, name='public_payment_confirm'),

    path('stripe/webhook/', stripe_webhook, name='stripe_webhook'),

    path('', include(router.urls)),
]
