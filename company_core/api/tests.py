from decimal import Decimal
from unittest import mock

import stripe
from django.contrib.auth.models import User
from django.core import mail
from django.test import TestCase
from django.test.utils import override_settings
from rest_framework.test import APIClient

from quotes.lifecycle import transition_to_sent
from quotes.line_items import create_line_item
from quotes.models import Invoice, Payment, Project, Quote, QuoteResponse
from quotes.payments import AcceptancePaymentCoordinator
from quotes.tests_payments import FakeGateway


class QuoteApiTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='estimator', password='p', email='estimator@kolmo.test')
        self.client = APIClient()
        self.client.force_authenticate(user=self.user)

    def make_quote(self, **kwargs):
        values = dict(
            user=self.user,
            title='Kitchen remodel',
            customer_name='Dana Smith',
            customer_email='dana@example.com',
            tax_rate=Decimal('10'),
        )
        values.update(kwargs)
        quote = Quote.objects.create(**values)
        create_line_item(quote.pk, {'category': 'labor', 'description': 'Cabinet install', 'quantity': '2', 'unit_price': '100'})
        create_line_item(quote.pk, {'category': 'materials', 'description': 'Hardware', 'quantity': '1', 'unit_price': '50'})
        return quote


class StaffQuoteApiTests(QuoteApiTestCase):
    def test_create_and_add_line_items(self):
        resp = self.client.post('/api/quotes/', {
            'title': 'Bathroom refresh',
            'customer_name': 'Sam Lee',
            'customer_email': 'sam@example.com',
            'tax_rate': '10',
        }, format='json')
        self.assertEqual(resp.status_code, 201)
        quote_id = resp.data['id']
        self.assertEqual(resp.data['status'], 'draft')
        self.assertEqual(resp.data['total'], '0.00')

        resp = self.client.post(f'/api/quotes/{quote_id}/line-items/', {
            'category': 'labor',
            'description': 'Tile work',
            'quantity': '2',
            'unit_price': '100',
        }, format='json')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['total_price'], '200.00')

        resp = self.client.get(f'/api/quotes/{quote_id}/')
        self.assertEqual(resp.data['subtotal'], '200.00')
        self.assertEqual(resp.data['total'], '220.00')
        self.assertEqual(len(resp.data['line_items']), 1)

    def test_invalid_payment_schedule(self):
        resp = self.client.post('/api/quotes/', {
            'title': 'Bathroom refresh',
            'down_payment_percentage': 50,
            'milestone_payment_percentage': 50,
            'final_payment_percentage': 50,
        }, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('payment_schedule', resp.data)

    def test_line_item_update_and_validation(self):
        quote = self.make_quote()
        item = quote.line_items.order_by('id').first()

        resp = self.client.patch(f'/api/line-items/{item.pk}/', {'quantity': '3'}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['total_price'], '300.00')
        quote.refresh_from_db()
        self.assertEqual(quote.total, Decimal('385.00'))

        resp = self.client.patch(f'/api/line-items/{item.pk}/', {'quantity': '-1'}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('quantity', resp.data)

        resp = self.client.delete(f'/api/line-items/{item.pk}/')
        self.assertEqual(resp.status_code, 204)
        quote.refresh_from_db()
        self.assertEqual(quote.total, Decimal('55.00'))

    def test_other_users_quotes_are_hidden(self):
        other = User.objects.create_user(username='other', password='p')
        quote = self.make_quote(user=other)
        item = quote.line_items.first()
        self.assertEqual(self.client.get(f'/api/quotes/{quote.pk}/').status_code, 404)
        self.assertEqual(self.client.patch(f'/api/line-items/{item.pk}/', {'quantity': '9'}, format='json').status_code, 404)

    def test_authentication_required(self):
        resp = APIClient().get('/api/quotes/')
        self.assertEqual(resp.status_code, 401)

    def test_financials(self):
        quote = self.make_quote()
        resp = self.client.patch(f'/api/quotes/{quote.pk}/financials/', {'discount_percentage': '10'}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['discount_amount'], '25.00')
        self.assertEqual(resp.data['total'], '247.50')

        resp = self.client.patch(f'/api/quotes/{quote.pk}/financials/', {'tax_rate': '0.5'}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('tax_rate', resp.data)

    def test_accepted_quote_is_read_only(self):
        quote = self.make_quote()
        Quote.objects.filter(pk=quote.pk).update(status=Quote.STATUS_ACCEPTED)
        resp = self.client.patch(f'/api/quotes/{quote.pk}/financials/', {'discount_percentage': '10'}, format='json')
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(f'/api/quotes/{quote.pk}/recompute/')
        self.assertEqual(resp.status_code, 400)

    def test_recompute(self):
        quote = self.make_quote()
        Quote.objects.filter(pk=quote.pk).update(total=Decimal('1.00'))
        resp = self.client.post(f'/api/quotes/{quote.pk}/recompute/')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['total'], '275.00')

    def test_send(self):
        quote = self.make_quote()
        resp = self.client.post(f'/api/quotes/{quote.pk}/send/')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], 'sent')
        token = quote.access_tokens.get().token
        self.assertTrue(resp.data['public_url'].endswith(f'/quotes/view/{token}'))
        self.assertEqual(len(mail.outbox), 1)

    def test_delete(self):
        quote = self.make_quote()
        resp = self.client.delete(f'/api/quotes/{quote.pk}/')
        self.assertEqual(resp.status_code, 204)
        self.assertFalse(Quote.objects.filter(pk=quote.pk).exists())


class PublicQuoteApiTests(QuoteApiTestCase):
    def setUp(self):
        super().setUp()
        self.public = APIClient()
        self.quote = self.make_quote()
        _, access = transition_to_sent(self.quote.pk)
        self.token = access.token
        self.gateway = FakeGateway()
        patcher = mock.patch('quotes.payments.get_payment_gateway', return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_detail_records_view(self):
        resp = self.public.get(f'/api/public/quotes/{self.token}/')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], 'viewed')
        self.assertEqual(resp.data['total'], '275.00')
        self.assertEqual(len(resp.data['line_items']), 2)
        self.assertNotIn('user', resp.data)

    def test_unknown_token(self):
        resp = self.public.get('/api/public/quotes/nope/')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.data, {'error': 'not_found'})

    def test_decline(self):
        resp = self.public.post(f'/api/public/quotes/{self.token}/respond/', {
            'action': 'declined',
            'message': 'Going with someone else',
        }, format='json', HTTP_X_FORWARDED_FOR='203.0.113.5, 10.0.0.1')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['quote']['status'], 'declined')
        self.assertNotIn('payment', resp.data)
        response = QuoteResponse.objects.get()
        self.assertEqual(response.ip_address, '203.0.113.5')

    def test_accept_then_confirm(self):
        resp = self.public.post(f'/api/public/quotes/{self.token}/respond/', {'action': 'accepted'}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.data['quote']['is_payment_pending'])
        payment = resp.data['payment']
        self.assertEqual(payment['amount'], '110.00')
        self.assertEqual(payment['currency'], 'usd')
        reference = payment['authorization_id']

        resp = self.public.post('/api/public/payments/confirm/', {'reference': reference}, format='json')
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data['error'], 'payment_not_settled')
        self.assertTrue(resp.data['retryable'])

        self.gateway.settle(reference)
        with self.captureOnCommitCallbacks(execute=True):
            resp = self.public.post('/api/public/payments/confirm/', {'reference': reference}, format='json')
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(resp.data['created'])
        self.assertEqual(resp.data['invoice']['amount'], '110.00')
        self.assertEqual(resp.data['invoice']['status'], 'paid')

        resp = self.public.post('/api/public/payments/confirm/', {'reference': reference}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.data['created'])
        self.assertEqual(Invoice.objects.count(), 1)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.STATUS_ACCEPTED)

    def test_accept_requires_customer_contact(self):
        Quote.objects.filter(pk=self.quote.pk).update(customer_email='')
        resp = self.public.post(f'/api/public/quotes/{self.token}/respond/', {'action': 'accepted'}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('email', resp.data)
        self.assertFalse(QuoteResponse.objects.exists())

    def test_provider_outage(self):
        self.gateway.fail = True
        resp = self.public.post(f'/api/public/quotes/{self.token}/respond/', {'action': 'accepted'}, format='json')
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.data['error'], 'payment_provider_unavailable')
        self.assertTrue(resp.data['retryable'])
        self.assertFalse(Project.objects.exists())
        self.assertFalse(QuoteResponse.objects.exists())
        self.quote.refresh_from_db()
        self.assertIsNone(self.quote.responded_at)
        self.assertFalse(self.quote.is_payment_pending)

        self.gateway.fail = False
        resp = self.public.post(f'/api/public/quotes/{self.token}/respond/', {'action': 'accepted'}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(QuoteResponse.objects.count(), 1)

    def test_unreconciled_payment(self):
        self.gateway.add_intent('pi_stray', Decimal('110.00'), {'quote_id': self.quote.pk})
        with self.assertLogs('quotes.payments', level='CRITICAL'):
            resp = self.public.post('/api/public/payments/confirm/', {'reference': 'pi_stray'}, format='json')
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.data['error'], 'payment_unreconciled')
        self.assertFalse(resp.data['retryable'])

    def test_installment_request(self):
        resp = self.public.post(f'/api/public/quotes/{self.token}/respond/', {'action': 'accepted'}, format='json')
        reference = resp.data['payment']['authorization_id']
        self.gateway.settle(reference)
        self.public.post('/api/public/payments/confirm/', {'reference': reference}, format='json')
        project = Project.objects.get(origin_quote=self.quote)

        resp = self.client.post(f'/api/projects/{project.pk}/installments/', {'invoice_type': 'milestone'}, format='json')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['invoice']['amount'], '110.00')
        self.assertEqual(resp.data['invoice']['status'], 'pending')
        self.assertTrue(resp.data['payment']['client_secret'])

        resp = self.client.post(f'/api/projects/{project.pk}/installments/', {'invoice_type': 'milestone'}, format='json')
        self.assertEqual(resp.status_code, 400)


@override_settings(STRIPE_WEBHOOK_SECRET='whsec_test')
class StripeWebhookTests(QuoteApiTestCase):
    def setUp(self):
        super().setUp()
        self.quote = self.make_quote(status=Quote.STATUS_SENT)
        self.gateway = FakeGateway()
        patcher = mock.patch('quotes.payments.get_payment_gateway', return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def post_event(self, event, **extra):
        extra.setdefault('HTTP_STRIPE_SIGNATURE', 't=1,v1=abc')
        event = stripe.Event.construct_from(dict(event, object='event'), 'sk_test_123')
        with mock.patch('api.webhooks.stripe.Webhook.construct_event', return_value=event):
            return self.client.post('/api/stripe/webhook/', data=b'{}', content_type='application/json', **extra)

    def succeeded(self, reference):
        return {'id': 'evt_1', 'type': 'payment_intent.succeeded', 'data': {'object': {'id': reference, 'object': 'payment_intent'}}}

    def test_succeeded_event_confirms_payment(self):
        handle = AcceptancePaymentCoordinator(gateway=self.gateway).initiate_acceptance(
            self.quote.pk, {'name': 'Dana Smith', 'email': 'dana@example.com'},
        )
        self.gateway.settle(handle.id)

        resp = self.post_event(self.succeeded(handle.id))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Invoice.objects.get().external_payment_reference, handle.id)

        resp = self.post_event(self.succeeded(handle.id))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Invoice.objects.count(), 1)
        self.assertEqual(Payment.objects.count(), 1)

    def test_orphaned_payment_acknowledged(self):
        self.gateway.add_intent('pi_stray', Decimal('110.00'), {})
        with self.assertLogs('quotes.payments', level='CRITICAL'):
            resp = self.post_event(self.succeeded('pi_stray'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['status'], 'unreconciled')

    def test_failed_payment_is_logged(self):
        event = {
            'id': 'evt_2',
            'type': 'payment_intent.payment_failed',
            'data': {'object': {
                'id': 'pi_9',
                'object': 'payment_intent',
                'last_payment_error': {'message': 'Card declined'},
                'metadata': {'quote_id': '4'},
            }},
        }
        with self.assertLogs('api.webhooks', level='WARNING') as logs:
            resp = self.post_event(event)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(Invoice.objects.exists())
        self.assertIn('Card declined', logs.output[0])
        self.assertIn("'quote_id': '4'", logs.output[0])

    def test_failed_payment_without_error_details(self):
        event = {
            'id': 'evt_3',
            'type': 'payment_intent.payment_failed',
            'data': {'object': {'id': 'pi_10', 'object': 'payment_intent'}},
        }
        with self.assertLogs('api.webhooks', level='WARNING') as logs:
            resp = self.post_event(event)
        self.assertEqual(resp.status_code, 200)
        self.assertIn('unknown error', logs.output[0])

    def test_missing_signature(self):
        resp = self.client.post('/api/stripe/webhook/', data=b'{}', content_type='application/json')
        self.assertEqual(resp.status_code, 400)

    def test_invalid_signature(self):
        error = stripe.SignatureVerificationError('No signatures found', 't=1,v1=abc')
        with mock.patch('api.webhooks.stripe.Webhook.construct_event', side_effect=error):
            resp = self.client.post(
                '/api/stripe/webhook/', data=b'{}', content_type='application/json', HTTP_STRIPE_SIGNATURE='t=1,v1=abc',
            )
        self.assertEqual(resp.status_code, 400)

    @override_settings(STRIPE_WEBHOOK_SECRET='')
    def test_unconfigured_secret(self):
        resp = self.post_event(self.succeeded('pi_1'))
        self.assertEqual(resp.status_code, 500)
