import re
from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

import stripe
from django.contrib.auth.models import User
from django.core import mail
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase
from django.test.utils import override_settings
from django.utils import timezone

from . import idempotency
from .exceptions import (
    OrphanedPaymentError,
    PaymentNotSettledError,
    PaymentProviderError,
    QuoteStateError,
)
from .line_items import create_line_item
from .models import Invoice, Payment, Project, Quote
from .payment_gateway import Authorization, AuthorizationDetails, StripePaymentGateway
from .payments import (
    AcceptancePaymentCoordinator,
    calculate_payment_schedule,
    generate_invoice_number,
)

CUSTOMER = {'name': 'Dana Smith', 'email': 'dana@example.com', 'phone': '555-0100'}


class FakeGateway:
    """In-memory stand-in for the processor."""

    def __init__(self, fail=False):
        self.fail = fail
        self.intents = {}
        self.created = []

    def create_authorization(self, amount, currency, metadata):
        if self.fail:
            raise PaymentProviderError("processor timed out", provider_code='timeout')
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.add_intent(intent_id, amount, metadata, status='requires_payment_method')
        self.created.append((amount, currency, metadata))
        return Authorization(id=intent_id, client_secret=f"{intent_id}_secret")

    def add_intent(self, intent_id, amount, metadata, status='succeeded'):
        self.intents[intent_id] = {
            'amount': Decimal(amount),
            'metadata': {key: str(value) for key, value in metadata.items()},
            'status': status,
        }

    def settle(self, intent_id):
        self.intents[intent_id]['status'] = 'succeeded'

    def retrieve_authorization(self, authorization_id):
        intent = self.intents[authorization_id]
        return AuthorizationDetails(
            id=authorization_id,
            status=intent['status'],
            amount=intent['amount'],
            metadata=dict(intent['metadata']),
            charge_id=f"ch_{authorization_id}",
        )


class PaymentTestMixin:
    def setUp(self):
        self.user = User.objects.create_user(username='estimator', password='p', email='estimator@kolmo.test')
        self.quote = Quote.objects.create(
            user=self.user,
            title='Kitchen remodel',
            customer_name='Dana Smith',
            customer_email='dana@example.com',
            tax_rate=Decimal('10'),
            status=Quote.STATUS_SENT,
        )
        create_line_item(self.quote.pk, {'category': 'labor', 'description': 'Cabinet install', 'quantity': '2', 'unit_price': '100'})
        create_line_item(self.quote.pk, {'category': 'materials', 'description': 'Hardware', 'quantity': '1', 'unit_price': '50'})
        self.gateway = FakeGateway()
        self.coordinator = AcceptancePaymentCoordinator(gateway=self.gateway)

    def accept_and_pay(self):
        handle = self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        self.gateway.settle(handle.id)
        with self.captureOnCommitCallbacks(execute=True):
            result = self.coordinator.confirm_payment(handle.id)
        return handle, result


class InitiateAcceptanceTests(PaymentTestMixin, TestCase):
    def test_requests_down_payment_authorization(self):
        handle = self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)

        self.assertEqual(handle.amount, Decimal('110.00'))
        self.assertEqual(handle.client_secret, f"{handle.id}_secret")
        amount, currency, metadata = self.gateway.created[0]
        self.assertEqual(amount, Decimal('110.00'))
        self.assertEqual(currency, 'usd')

        project = Project.objects.get(origin_quote=self.quote)
        self.assertEqual(metadata['project_id'], project.pk)
        self.assertEqual(metadata['quote_id'], self.quote.pk)
        self.assertEqual(metadata['payment_type'], Invoice.TYPE_DOWN_PAYMENT)
        self.assertEqual(metadata['percentage'], 40)
        self.assertEqual(project.total_budget, Decimal('275.00'))
        self.assertEqual(project.customer_email, 'dana@example.com')

        self.assertFalse(Invoice.objects.exists())
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.STATUS_SENT)

    def test_repeated_initiation_reuses_project(self):
        self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        self.assertEqual(Project.objects.filter(origin_quote=self.quote).count(), 1)
        self.assertEqual(len(self.gateway.created), 2)

    def test_provider_failure_leaves_no_project(self):
        coordinator = AcceptancePaymentCoordinator(gateway=FakeGateway(fail=True))
        with self.assertRaises(PaymentProviderError):
            coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        self.assertFalse(Project.objects.exists())
        self.assertFalse(Invoice.objects.exists())

    def test_customer_info_required(self):
        with self.assertRaises(ValidationError) as ctx:
            self.coordinator.initiate_acceptance(self.quote.pk, {'name': ' ', 'email': 'not-an-email'})
        self.assertEqual(set(ctx.exception.message_dict), {'name', 'email'})
        self.assertEqual(self.gateway.created, [])

    def test_draft_quote_cannot_be_accepted(self):
        Quote.objects.filter(pk=self.quote.pk).update(status=Quote.STATUS_DRAFT)
        with self.assertRaises(QuoteStateError):
            self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)

    def test_expired_quote_cannot_be_accepted(self):
        Quote.objects.filter(pk=self.quote.pk).update(valid_until=timezone.now() - timedelta(days=1))
        with self.assertRaises(ValidationError) as ctx:
            self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        self.assertIn('valid_until', ctx.exception.message_dict)

    def test_empty_quote_has_nothing_to_collect(self):
        self.quote.line_items.all().delete()
        with self.assertRaises(ValidationError) as ctx:
            self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        self.assertIn('total', ctx.exception.message_dict)
        self.assertFalse(Project.objects.exists())


class ConfirmPaymentTests(PaymentTestMixin, TestCase):
    def test_confirmation_records_invoice_payment_and_accepts_quote(self):
        handle, result = self.accept_and_pay()

        self.assertTrue(result.created)
        invoice = result.invoice
        self.assertEqual(invoice.amount, Decimal('110.00'))
        self.assertEqual(invoice.status, Invoice.STATUS_PAID)
        self.assertEqual(invoice.invoice_type, Invoice.TYPE_DOWN_PAYMENT)
        self.assertEqual(invoice.external_payment_reference, handle.id)
        self.assertRegex(invoice.invoice_number, r'^INV-\d{6}-[A-Z0-9]{6}$')
        self.assertEqual(result.payment.charge_id, f"ch_{handle.id}")
        self.assertEqual(result.project.origin_quote_id, self.quote.pk)

        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.STATUS_ACCEPTED)
        self.assertIsNotNone(self.quote.responded_at)

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, 'Welcome to Your Project - Kitchen remodel')
        self.assertIn(invoice.invoice_number, mail.outbox[0].body)

    def test_double_confirmation_returns_the_same_invoice(self):
        handle, first = self.accept_and_pay()
        mail.outbox = []

        with self.assertLogs('quotes.payments', level='INFO') as logs:
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                second = self.coordinator.confirm_payment(handle.id)

        self.assertFalse(second.created)
        self.assertEqual(second.invoice.pk, first.invoice.pk)
        self.assertEqual(second.payment.pk, first.payment.pk)
        self.assertEqual(Invoice.objects.count(), 1)
        self.assertEqual(Payment.objects.count(), 1)
        self.assertEqual(callbacks, [])
        self.assertEqual(mail.outbox, [])
        self.assertIn('already processed', '\n'.join(logs.output))

    def test_concurrent_confirmation_loses_to_unique_constraint(self):
        handle, first = self.accept_and_pay()
        real_lookup = idempotency.find_invoice_by_payment_reference
        calls = []

        def lookup_missing_first_time(reference):
            calls.append(reference)
            if len(calls) == 1:
                return None
            return real_lookup(reference)

        with mock.patch('quotes.payments.find_invoice_by_payment_reference', side_effect=lookup_missing_first_time):
            second = self.coordinator.confirm_payment(handle.id)

        self.assertFalse(second.created)
        self.assertEqual(second.invoice.pk, first.invoice.pk)
        self.assertEqual(Invoice.objects.count(), 1)
        self.assertEqual(Payment.objects.count(), 1)
        self.assertGreaterEqual(len(calls), 2)

    def test_unsettled_authorization_rejected(self):
        handle = self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        with self.assertRaises(PaymentNotSettledError) as ctx:
            self.coordinator.confirm_payment(handle.id)
        self.assertEqual(ctx.exception.status, 'requires_payment_method')
        self.assertFalse(Invoice.objects.exists())

    def test_reference_required(self):
        with self.assertRaises(ValidationError):
            self.coordinator.confirm_payment('')

    @override_settings(ADMINS=[('Operations', 'ops@kolmo.test')])
    def test_payment_without_project_is_orphaned(self):
        self.gateway.add_intent('pi_orphan', Decimal('110.00'), {'quote_id': self.quote.pk})

        with self.assertLogs('quotes.payments', level='CRITICAL'):
            with self.assertRaises(OrphanedPaymentError) as ctx:
                self.coordinator.confirm_payment('pi_orphan')

        self.assertEqual(ctx.exception.reference, 'pi_orphan')
        self.assertFalse(Project.objects.exists())
        self.assertFalse(Invoice.objects.exists())
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['ops@kolmo.test'])
        self.assertIn('Unreconciled payment pi_orphan', mail.outbox[0].subject)

    @override_settings(ADMINS=[('Operations', 'ops@kolmo.test')])
    def test_payment_for_unknown_project_is_orphaned(self):
        self.gateway.add_intent('pi_lost', Decimal('110.00'), {'quote_id': self.quote.pk, 'project_id': 9999})
        with self.assertLogs('quotes.payments', level='CRITICAL'):
            with self.assertRaises(OrphanedPaymentError):
                self.coordinator.confirm_payment('pi_lost')
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.STATUS_SENT)

    def test_payment_with_mismatched_quote_is_orphaned(self):
        self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        project = Project.objects.get(origin_quote=self.quote)
        self.gateway.add_intent('pi_mixed', Decimal('110.00'), {'quote_id': self.quote.pk + 1, 'project_id': project.pk})
        with self.assertLogs('quotes.payments', level='CRITICAL'):
            with self.assertRaises(OrphanedPaymentError) as ctx:
                self.coordinator.confirm_payment('pi_mixed')
        self.assertIn('belongs to quote', ctx.exception.reason)
        self.assertFalse(Invoice.objects.exists())

    def test_invoice_number_collision_retries(self):
        handle = self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        project = Project.objects.get(origin_quote=self.quote)
        Invoice.objects.create(
            project=project,
            invoice_number='INV-202610-TAKEN1',
            amount=Decimal('1.00'),
            invoice_type=Invoice.TYPE_FINAL,
        )
        self.gateway.settle(handle.id)

        numbers = ['INV-202610-TAKEN1', 'INV-202610-FRESH1']
        with mock.patch('quotes.payments.generate_invoice_number', side_effect=numbers):
            with self.assertLogs('quotes.payments', level='WARNING'):
                result = self.coordinator.confirm_payment(handle.id)

        self.assertEqual(result.invoice.invoice_number, 'INV-202610-FRESH1')
        self.assertEqual(Payment.objects.count(), 1)

    @override_settings(INVOICE_NUMBER_MAX_ATTEMPTS=2)
    def test_invoice_number_attempts_are_bounded(self):
        handle = self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        project = Project.objects.get(origin_quote=self.quote)
        Invoice.objects.create(
            project=project,
            invoice_number='INV-202610-TAKEN1',
            amount=Decimal('1.00'),
            invoice_type=Invoice.TYPE_FINAL,
        )
        self.gateway.settle(handle.id)

        with mock.patch('quotes.payments.generate_invoice_number', return_value='INV-202610-TAKEN1'):
            with self.assertRaises(DatabaseError):
                self.coordinator.confirm_payment(handle.id)

        self.assertFalse(Payment.objects.exists())
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.STATUS_SENT)

    def test_confirmation_email_failure_keeps_records(self):
        handle = self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        self.gateway.settle(handle.id)
        with mock.patch('quotes.notifications.send_mail', side_effect=OSError('smtp down')):
            with self.assertLogs('quotes.payments', level='ERROR'):
                with self.captureOnCommitCallbacks(execute=True):
                    result = self.coordinator.confirm_payment(handle.id)
        self.assertTrue(result.created)
        self.assertEqual(Invoice.objects.get().status, Invoice.STATUS_PAID)


class PaymentScheduleTests(TestCase):
    def schedule_for(self, total, down, milestone, final):
        quote = Quote(
            title='Deck',
            total=Decimal(total),
            down_payment_percentage=down,
            milestone_payment_percentage=milestone,
            final_payment_percentage=final,
        )
        return calculate_payment_schedule(quote)

    def test_default_split(self):
        schedule = self.schedule_for('275.00', 40, 40, 20)
        self.assertEqual(schedule.down_payment.amount, Decimal('110.00'))
        self.assertEqual(schedule.milestone_payment.amount, Decimal('110.00'))
        self.assertEqual(schedule.final_payment.amount, Decimal('55.00'))

    def test_final_installment_absorbs_rounding(self):
        schedule = self.schedule_for('100.01', 33, 33, 34)
        self.assertEqual(schedule.down_payment.amount, Decimal('33.00'))
        self.assertEqual(schedule.milestone_payment.amount, Decimal('33.00'))
        self.assertEqual(schedule.final_payment.amount, Decimal('34.01'))
        self.assertEqual(sum(i.amount for i in schedule), Decimal('100.01'))

    def test_zero_final_percentage(self):
        schedule = self.schedule_for('99.99', 60, 40, 0)
        self.assertEqual(schedule.final_payment.amount, Decimal('0.00'))

    def test_invoice_number_format(self):
        number = generate_invoice_number(date(2026, 3, 5))
        self.assertTrue(number.startswith('INV-202603-'))
        self.assertTrue(re.fullmatch(r'INV-\d{6}-[A-Z0-9]{6}', number))


class InstallmentTests(PaymentTestMixin, TestCase):
    def test_milestone_invoice_and_settlement(self):
        _, down = self.accept_and_pay()
        mail.outbox = []

        invoice, handle = self.coordinator.request_installment(down.project.pk, Invoice.TYPE_MILESTONE)

        self.assertEqual(invoice.amount, Decimal('110.00'))
        self.assertEqual(invoice.status, Invoice.STATUS_PENDING)
        self.assertEqual(invoice.due_date, timezone.localdate() + timedelta(days=14))
        self.assertEqual(invoice.authorization_id, handle.id)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(handle.client_secret, mail.outbox[0].body)
        _, _, metadata = self.gateway.created[-1]
        self.assertEqual(metadata['invoice_id'], invoice.pk)

        mail.outbox = []
        self.gateway.settle(handle.id)
        with self.captureOnCommitCallbacks(execute=True):
            result = self.coordinator.confirm_payment(handle.id)

        invoice.refresh_from_db()
        self.assertTrue(result.created)
        self.assertEqual(invoice.status, Invoice.STATUS_PAID)
        self.assertEqual(invoice.external_payment_reference, handle.id)
        self.assertEqual(invoice.payments.count(), 1)
        self.assertEqual(mail.outbox[0].subject, 'Payment Confirmation - Milestone payment Received')

        again = self.coordinator.confirm_payment(handle.id)
        self.assertFalse(again.created)
        self.assertEqual(invoice.payments.count(), 1)

    def test_concurrent_installment_confirmation_returns_recorded_invoice(self):
        _, down = self.accept_and_pay()
        invoice, handle = self.coordinator.request_installment(down.project.pk, Invoice.TYPE_MILESTONE)
        self.gateway.settle(handle.id)
        self.coordinator.confirm_payment(handle.id)
        mail.outbox = []

        lookups = []

        def recorded_after_first_lookup(reference):
            lookups.append(reference)
            if len(lookups) == 1:
                return None
            return idempotency.find_invoice_by_payment_reference(reference)

        with mock.patch('quotes.payments.find_invoice_by_payment_reference', side_effect=recorded_after_first_lookup):
            with self.assertNoLogs('quotes.payments', level='CRITICAL'):
                again = self.coordinator.confirm_payment(handle.id)

        self.assertFalse(again.created)
        self.assertEqual(again.invoice, invoice)
        self.assertEqual(invoice.payments.count(), 1)
        self.assertEqual(mail.outbox, [])

    def test_final_invoice_due_in_a_week(self):
        _, down = self.accept_and_pay()
        invoice, _ = self.coordinator.request_installment(down.project.pk, Invoice.TYPE_FINAL)
        self.assertEqual(invoice.amount, Decimal('55.00'))
        self.assertEqual(invoice.due_date, timezone.localdate() + timedelta(days=7))

    def test_each_installment_requested_once(self):
        _, down = self.accept_and_pay()
        self.coordinator.request_installment(down.project.pk, Invoice.TYPE_MILESTONE)
        with self.assertRaises(ValidationError):
            self.coordinator.request_installment(down.project.pk, Invoice.TYPE_MILESTONE)

    def test_invalid_installment_type(self):
        _, down = self.accept_and_pay()
        with self.assertRaises(ValidationError):
            self.coordinator.request_installment(down.project.pk, Invoice.TYPE_DOWN_PAYMENT)

    def test_installment_needs_confirmed_down_payment(self):
        self.coordinator.initiate_acceptance(self.quote.pk, CUSTOMER)
        project = Project.objects.get(origin_quote=self.quote)
        with self.assertRaises(QuoteStateError):
            self.coordinator.request_installment(project.pk, Invoice.TYPE_MILESTONE)
        self.assertFalse(Invoice.objects.exists())

    def test_second_payment_for_settled_invoice_is_orphaned(self):
        _, down = self.accept_and_pay()
        invoice, handle = self.coordinator.request_installment(down.project.pk, Invoice.TYPE_MILESTONE)
        self.gateway.settle(handle.id)
        self.coordinator.confirm_payment(handle.id)

        self.gateway.add_intent('pi_extra', invoice.amount, {'invoice_id': invoice.pk, 'project_id': down.project.pk})
        with self.assertLogs('quotes.payments', level='CRITICAL'):
            with self.assertRaises(OrphanedPaymentError) as ctx:
                self.coordinator.confirm_payment('pi_extra')
        self.assertIn('already settled', ctx.exception.reason)
        self.assertEqual(invoice.payments.count(), 1)


@override_settings(STRIPE_SECRET_KEY='sk_test_123')
class StripePaymentGatewayTests(TestCase):
    def test_create_authorization_sends_cents(self):
        intent = stripe.PaymentIntent.construct_from(
            {'id': 'pi_1', 'object': 'payment_intent', 'client_secret': 'pi_1_secret'}, 'sk_test_123',
        )
        with mock.patch('quotes.payment_gateway.stripe.PaymentIntent.create', return_value=intent) as create:
            authorization = StripePaymentGateway().create_authorization(
                Decimal('110.00'), 'usd', {'quote_id': 7, 'percentage': 40},
            )
        self.assertEqual(authorization, Authorization(id='pi_1', client_secret='pi_1_secret'))
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs['amount'], 11000)
        self.assertEqual(kwargs['currency'], 'usd')
        self.assertEqual(kwargs['metadata'], {'quote_id': '7', 'percentage': '40'})

    def test_processor_error_becomes_provider_error(self):
        error = stripe.StripeError('Your card was declined.', code='card_declined')
        with mock.patch('quotes.payment_gateway.stripe.PaymentIntent.create', side_effect=error):
            with self.assertLogs('quotes.payment_gateway', level='ERROR'):
                with self.assertRaises(PaymentProviderError) as ctx:
                    StripePaymentGateway().create_authorization(Decimal('10.00'), 'usd', {})
        self.assertEqual(ctx.exception.provider_code, 'card_declined')
        self.assertIn('declined', str(ctx.exception))

    @override_settings(STRIPE_SECRET_KEY='')
    def test_missing_key_is_provider_error(self):
        with self.assertRaises(PaymentProviderError):
            StripePaymentGateway().create_authorization(Decimal('10.00'), 'usd', {})

    def retrieve(self, values):
        intent = stripe.PaymentIntent.construct_from(
            dict({'id': 'pi_1', 'object': 'payment_intent', 'status': 'succeeded', 'amount': 11000}, **values),
            'sk_test_123',
        )
        with mock.patch('quotes.payment_gateway.stripe.PaymentIntent.retrieve', return_value=intent):
            return StripePaymentGateway().retrieve_authorization('pi_1')

    def test_retrieve_authorization(self):
        details = self.retrieve({
            'amount_received': 11000,
            'metadata': {'quote_id': '7', 'project_id': '3'},
            'latest_charge': {'id': 'ch_1', 'object': 'charge'},
        })
        self.assertEqual(details.status, 'succeeded')
        self.assertEqual(details.amount, Decimal('110.00'))
        self.assertEqual(details.metadata, {'quote_id': '7', 'project_id': '3'})
        self.assertEqual(details.charge_id, 'ch_1')

    def test_retrieve_authorization_with_charge_id_and_no_capture(self):
        details = self.retrieve({
            'status': 'processing',
            'amount_received': 0,
            'metadata': {},
            'latest_charge': 'ch_2',
        })
        self.assertEqual(details.amount, Decimal('110.00'))
        self.assertEqual(details.metadata, {})
        self.assertEqual(details.charge_id, 'ch_2')

    def test_retrieve_authorization_without_optional_fields(self):
        details = self.retrieve({})
        self.assertEqual(details.amount, Decimal('110.00'))
        self.assertEqual(details.metadata, {})
        self.assertEqual(details.charge_id, '')


class FindUnreconciledPaymentsCommandTests(PaymentTestMixin, TestCase):
    def test_clean_ledger(self):
        self.accept_and_pay()
        out = StringIO()
        call_command('find_unreconciled_payments', stdout=out)
        self.assertIn('No unreconciled payments found.', out.getvalue())

    def test_reports_down_payment_on_unaccepted_quote(self):
        handle, result = self.accept_and_pay()
        Quote.objects.filter(pk=self.quote.pk).update(status=Quote.STATUS_VIEWED)
        out = StringIO()
        call_command('find_unreconciled_payments', stdout=out)
        self.assertIn('Total Unreconciled Payments Found: 1', out.getvalue())
        self.assertIn(handle.id, out.getvalue())
        self.assertIn(result.invoice.invoice_number, out.getvalue())
