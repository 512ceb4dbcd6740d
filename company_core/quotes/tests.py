from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

import requests
from django.contrib import admin
from django.contrib.auth.models import User
from django.core import mail
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.forms.models import model_to_dict
from django.test import RequestFactory, SimpleTestCase, TestCase
from django.test.utils import override_settings
from django.utils import timezone

from .admin import QuoteAdmin, QuoteAdminForm, QuoteLineItemInline
from .exceptions import QuoteStateError
from .ledger import (
    QuoteOverrides,
    TaxRate,
    apply_discount,
    calculate_installment,
    calculate_quote_totals,
    ensure_decimal,
    line_item_total,
    to_minor_units,
)
from .lifecycle import (
    create_quote,
    delete_quote,
    get_quote_by_access_token,
    record_response,
    record_view,
    transition_to_sent,
    update_quote,
    update_quote_financials,
)
from .line_items import (
    create_line_item,
    delete_line_item,
    get_quote_for_display,
    list_line_items,
    recompute_totals,
    update_line_item,
)
from .models import (
    Project,
    Quote,
    QuoteAccessToken,
    QuoteLineItem,
    QuoteMedia,
    QuoteResponse,
)


def overrides(**kwargs):
    values = dict(
        discount_percentage=Decimal('0'),
        discount_amount=Decimal('0'),
        tax_rate=Decimal('10'),
        tax_amount=Decimal('0'),
        is_manual_tax=False,
    )
    values.update(kwargs)
    return QuoteOverrides(**values)


class QuoteTotalsCalculationTests(SimpleTestCase):
    def test_percentage_tax_rate(self):
        totals = calculate_quote_totals([Decimal('200.00'), Decimal('50.00')], overrides())
        self.assertEqual(totals.subtotal, Decimal('250.00'))
        self.assertEqual(totals.discounted_subtotal, Decimal('250.00'))
        self.assertEqual(totals.tax_amount, Decimal('25.00'))
        self.assertEqual(totals.total, Decimal('275.00'))

    def test_percentage_discount(self):
        totals = calculate_quote_totals(
            [Decimal('200.00'), Decimal('50.00')],
            overrides(discount_percentage=Decimal('10')),
        )
        self.assertEqual(totals.discount_amount, Decimal('25.00'))
        self.assertEqual(totals.discounted_subtotal, Decimal('225.00'))
        self.assertEqual(totals.tax_amount, Decimal('22.50'))
        self.assertEqual(totals.total, Decimal('247.50'))

    def test_manual_tax_ignores_rate(self):
        totals = calculate_quote_totals(
            [Decimal('250.00')],
            overrides(is_manual_tax=True, tax_amount=Decimal('40'), tax_rate=Decimal('25')),
        )
        self.assertEqual(totals.tax_amount, Decimal('40.00'))
        self.assertEqual(totals.total, Decimal('290.00'))

    def test_percentage_discount_wins_over_flat_amount(self):
        totals = calculate_quote_totals(
            [Decimal('250.00')],
            overrides(discount_percentage=Decimal('10'), discount_amount=Decimal('100.00')),
        )
        self.assertEqual(totals.discount_amount, Decimal('25.00'))
        self.assertEqual(totals.discounted_subtotal, Decimal('225.00'))

    def test_flat_discount(self):
        totals = calculate_quote_totals([Decimal('250.00')], overrides(discount_amount=Decimal('50.00')))
        self.assertEqual(totals.discounted_subtotal, Decimal('200.00'))
        self.assertEqual(totals.total, Decimal('220.00'))

    def test_flat_discount_larger_than_subtotal_is_capped_and_logged(self):
        with self.assertLogs('quotes.ledger', level='WARNING') as logs:
            totals = calculate_quote_totals([Decimal('30.00')], overrides(discount_amount=Decimal('50.00')))
        self.assertEqual(totals.discounted_subtotal, Decimal('0.00'))
        self.assertEqual(totals.total, Decimal('0.00'))
        self.assertIn('exceeds subtotal', logs.output[0])

    def test_subtotal_independent_of_item_order(self):
        items = [Decimal('19.99'), Decimal('0.01'), Decimal('105.50'), Decimal('3.33')]
        forward = calculate_quote_totals(items, overrides(tax_rate=Decimal('8.25')))
        backward = calculate_quote_totals(list(reversed(items)), overrides(tax_rate=Decimal('8.25')))
        self.assertEqual(forward, backward)
        self.assertEqual(forward.subtotal, Decimal('128.83'))

    def test_totals_decompose(self):
        totals = calculate_quote_totals(
            [Decimal('333.33'), Decimal('66.67')],
            overrides(discount_percentage=Decimal('7.5'), tax_rate=Decimal('10.60')),
        )
        self.assertEqual(totals.discounted_subtotal, totals.subtotal - totals.discount_amount)
        self.assertEqual(totals.total, totals.discounted_subtotal + totals.tax_amount)

    def test_decimal_and_percent_rates_agree(self):
        as_decimal = calculate_quote_totals([Decimal('250.00')], overrides(tax_rate=Decimal('0.10')))
        as_percent = calculate_quote_totals([Decimal('250.00')], overrides(tax_rate=Decimal('10')))
        self.assertEqual(as_decimal, as_percent)

    def test_line_item_discount_precedence(self):
        self.assertEqual(line_item_total(2, Decimal('100'), Decimal('10'), Decimal('50')), Decimal('180.00'))
        self.assertEqual(line_item_total(2, Decimal('100'), None, Decimal('50')), Decimal('150.00'))

    def test_apply_discount_never_goes_negative(self):
        discount, net = apply_discount(Decimal('10.00'), None, Decimal('15.00'))
        self.assertEqual(discount, Decimal('10.00'))
        self.assertEqual(net, Decimal('0.00'))

    def test_floats_do_not_drift(self):
        self.assertEqual(ensure_decimal(0.1), Decimal('0.1'))
        self.assertEqual(line_item_total(3, 0.1), Decimal('0.30'))

    def test_installment_and_minor_units(self):
        self.assertEqual(calculate_installment(Decimal('247.50'), 40), Decimal('99.00'))
        self.assertEqual(to_minor_units(Decimal('247.50')), 24750)


class TaxRateTests(SimpleTestCase):
    def test_from_stored_reads_small_values_as_decimals(self):
        rate = TaxRate.from_stored(Decimal('0.106'))
        self.assertEqual(rate.as_percent(), Decimal('10.600'))

    def test_from_stored_reads_large_values_as_percent(self):
        rate = TaxRate.from_stored(Decimal('10.6'))
        self.assertEqual(rate.as_decimal(), Decimal('0.106'))

    def test_equality_across_units(self):
        self.assertEqual(TaxRate(Decimal('0.08'), 'decimal'), TaxRate(Decimal('8'), 'percent'))

    def test_unknown_unit(self):
        with self.assertRaises(ValueError):
            TaxRate(Decimal('8'), 'basis_points')


class QuoteTestMixin:
    def make_user(self, username='estimator'):
        return User.objects.create_user(username=username, password='p', email=f'{username}@kolmo.test')

    def make_quote(self, **kwargs):
        values = dict(
            user=self.user,
            title='Kitchen remodel',
            customer_name='Dana Smith',
            customer_email='dana@example.com',
            tax_rate=Decimal('10'),
        )
        values.update(kwargs)
        return Quote.objects.create(**values)

    def add_scenario_items(self, quote):
        create_line_item(quote.pk, {'category': 'labor', 'description': 'Cabinet install', 'quantity': '2', 'unit_price': '100'})
        create_line_item(quote.pk, {'category': 'materials', 'description': 'Hardware', 'quantity': '1', 'unit_price': '50'})


class LineItemStoreTests(QuoteTestMixin, TestCase):
    def setUp(self):
        self.user = self.make_user()
        self.quote = self.make_quote()

    def test_create_recomputes_totals(self):
        self.add_scenario_items(self.quote)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.subtotal, Decimal('250.00'))
        self.assertEqual(self.quote.tax_amount, Decimal('25.00'))
        self.assertEqual(self.quote.total, Decimal('275.00'))

    def test_update_recomputes_totals(self):
        self.add_scenario_items(self.quote)
        item = list_line_items(self.quote.pk)[0]
        update_line_item(item.pk, {'quantity': '3'})
        item.refresh_from_db()
        self.quote.refresh_from_db()
        self.assertEqual(item.total_price, Decimal('300.00'))
        self.assertEqual(self.quote.subtotal, Decimal('350.00'))
        self.assertEqual(self.quote.total, Decimal('385.00'))

    def test_delete_recomputes_totals(self):
        self.add_scenario_items(self.quote)
        item = list_line_items(self.quote.pk)[0]
        delete_line_item(item.pk)
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.subtotal, Decimal('50.00'))
        self.assertEqual(self.quote.total, Decimal('55.00'))

    def test_negative_quantity_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            create_line_item(self.quote.pk, {'category': 'labor', 'description': 'x', 'quantity': '-1', 'unit_price': '10'})
        self.assertIn('quantity', ctx.exception.message_dict)
        self.assertFalse(QuoteLineItem.objects.exists())

    def test_malformed_price_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            create_line_item(self.quote.pk, {'category': 'labor', 'description': 'x', 'unit_price': 'ten'})
        self.assertIn('unit_price', ctx.exception.message_dict)

    def test_sub_cent_precision_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            create_line_item(self.quote.pk, {'category': 'labor', 'description': 'x', 'quantity': '1.255', 'unit_price': '10'})
        self.assertEqual(ctx.exception.message_dict['quantity'], ["Use at most 2 decimal places."])
        self.assertFalse(QuoteLineItem.objects.exists())

        item = create_line_item(self.quote.pk, {'category': 'labor', 'description': 'x', 'quantity': '1.250', 'unit_price': '10'})
        self.assertEqual(item.quantity, Decimal('1.25'))
        self.assertEqual(item.total_price, Decimal('12.50'))

    def test_required_fields_on_create(self):
        with self.assertRaises(ValidationError) as ctx:
            create_line_item(self.quote.pk, {'quantity': '1'})
        self.assertEqual(
            set(ctx.exception.message_dict),
            {'category', 'description', 'unit_price'},
        )

    def test_unknown_field_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            create_line_item(self.quote.pk, {'category': 'a', 'description': 'b', 'unit_price': '1', 'total_price': '999'})
        self.assertIn('total_price', ctx.exception.message_dict)

    def test_item_discount_larger_than_line_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            create_line_item(self.quote.pk, {
                'category': 'a', 'description': 'b', 'unit_price': '10', 'discount_amount': '11',
            })
        self.assertIn('discount_amount', ctx.exception.message_dict)

    def test_failed_update_leaves_item_untouched(self):
        self.add_scenario_items(self.quote)
        item = list_line_items(self.quote.pk)[0]
        with self.assertRaises(ValidationError):
            update_line_item(item.pk, {'quantity': '2', 'unit_price': '-5'})
        item.refresh_from_db()
        self.assertEqual(item.unit_price, Decimal('100.00'))

    def test_accepted_quote_is_frozen(self):
        self.add_scenario_items(self.quote)
        Quote.objects.filter(pk=self.quote.pk).update(status=Quote.STATUS_ACCEPTED)
        item = list_line_items(self.quote.pk)[0]
        with self.assertRaises(QuoteStateError):
            update_line_item(item.pk, {'quantity': '5'})
        with self.assertRaises(QuoteStateError):
            delete_line_item(item.pk)

    def test_recompute_is_idempotent(self):
        self.add_scenario_items(self.quote)
        Quote.objects.filter(pk=self.quote.pk).update(discount_percentage=Decimal('12.5'), tax_rate=Decimal('10.60'))
        first = recompute_totals(self.quote.pk)
        second = recompute_totals(self.quote.pk)
        self.assertEqual(first, second)

    def test_stale_totals_recomputed_on_read(self):
        self.add_scenario_items(self.quote)
        Quote.objects.filter(pk=self.quote.pk).update(subtotal=Decimal('999.00'), total=Decimal('1.00'))
        stale = Quote.objects.get(pk=self.quote.pk)
        with self.assertLogs('quotes.line_items', level='WARNING'):
            quote = get_quote_for_display(stale)
        self.assertEqual(quote.subtotal, Decimal('250.00'))
        self.assertEqual(quote.total, Decimal('275.00'))

    def test_stale_totals_on_accepted_quote_left_alone(self):
        self.add_scenario_items(self.quote)
        Quote.objects.filter(pk=self.quote.pk).update(status=Quote.STATUS_ACCEPTED, total=Decimal('1.00'))
        stale = Quote.objects.get(pk=self.quote.pk)
        with self.assertLogs('quotes.line_items', level='WARNING'):
            quote = get_quote_for_display(stale)
        self.assertEqual(quote.total, Decimal('1.00'))


class QuoteEditingTests(QuoteTestMixin, TestCase):
    def setUp(self):
        self.user = self.make_user()

    def test_create_quote(self):
        quote = create_quote(self.user, {
            'title': 'Deck rebuild',
            'customer_name': 'Sam Lee',
            'customer_email': 'sam@example.com',
            'down_payment_percentage': 30,
            'milestone_payment_percentage': 40,
            'final_payment_percentage': 30,
            'tax_rate': '8.25',
        })
        self.assertEqual(quote.status, Quote.STATUS_DRAFT)
        self.assertTrue(quote.quote_number.startswith('QUO-'))
        self.assertEqual(quote.tax_rate, Decimal('8.25'))
        self.assertEqual(quote.total, Decimal('0.00'))

    def test_payment_percentages_must_total_100(self):
        with self.assertRaises(ValidationError) as ctx:
            create_quote(self.user, {
                'title': 'Deck rebuild',
                'down_payment_percentage': 50,
                'milestone_payment_percentage': 40,
                'final_payment_percentage': 20,
            })
        self.assertIn('payment_schedule', ctx.exception.message_dict)
        self.assertFalse(Quote.objects.exists())

    def test_update_rejects_bad_percentages_without_saving(self):
        quote = self.make_quote()
        with self.assertRaises(ValidationError):
            update_quote(quote.pk, {'title': 'Renamed', 'final_payment_percentage': 0})
        quote.refresh_from_db()
        self.assertEqual(quote.title, 'Kitchen remodel')
        self.assertEqual(quote.final_payment_percentage, 20)

    def test_update_rejects_unknown_fields(self):
        quote = self.make_quote()
        with self.assertRaises(ValidationError) as ctx:
            update_quote(quote.pk, {'status': Quote.STATUS_ACCEPTED})
        self.assertIn('status', ctx.exception.message_dict)

    def test_financial_overrides_recompute(self):
        quote = self.make_quote()
        self.add_scenario_items(quote)
        quote = update_quote_financials(quote.pk, {'discount_percentage': '10'})
        self.assertEqual(quote.discount_amount, Decimal('25.00'))
        self.assertEqual(quote.discounted_subtotal, Decimal('225.00'))
        self.assertEqual(quote.tax_amount, Decimal('22.50'))
        self.assertEqual(quote.total, Decimal('247.50'))

    def test_manual_tax_override(self):
        quote = self.make_quote()
        self.add_scenario_items(quote)
        quote = update_quote_financials(quote.pk, {'is_manual_tax': True, 'tax_amount': '40'})
        self.assertEqual(quote.tax_amount, Decimal('40.00'))
        self.assertEqual(quote.total, Decimal('290.00'))

    def test_manual_tax_flag_parsed_from_strings(self):
        quote = self.make_quote()
        self.add_scenario_items(quote)
        quote = update_quote_financials(quote.pk, {'is_manual_tax': 'true', 'tax_amount': '40'})
        self.assertTrue(quote.is_manual_tax)
        self.assertEqual(quote.total, Decimal('290.00'))

        quote = update_quote_financials(quote.pk, {'is_manual_tax': 'false'})
        self.assertFalse(quote.is_manual_tax)
        self.assertEqual(quote.tax_amount, Decimal('25.00'))
        self.assertEqual(quote.total, Decimal('275.00'))

    def test_unrecognised_manual_tax_flag_rejected(self):
        quote = self.make_quote()
        with self.assertRaises(ValidationError) as ctx:
            update_quote_financials(quote.pk, {'is_manual_tax': 'maybe'})
        self.assertIn('is_manual_tax', ctx.exception.message_dict)
        quote.refresh_from_db()
        self.assertFalse(quote.is_manual_tax)

    def test_sub_cent_tax_amount_rejected(self):
        quote = self.make_quote()
        with self.assertRaises(ValidationError) as ctx:
            update_quote_financials(quote.pk, {'is_manual_tax': True, 'tax_amount': '40.005'})
        self.assertIn('tax_amount', ctx.exception.message_dict)

    def test_decimal_tax_rate_stored_as_percent(self):
        quote = self.make_quote()
        quote = update_quote_financials(quote.pk, {'tax_rate': '0.106', 'tax_rate_unit': 'decimal'})
        self.assertEqual(quote.tax_rate, Decimal('10.6'))

    def test_sub_one_percent_rate_rejected(self):
        quote = self.make_quote()
        with self.assertRaises(ValidationError) as ctx:
            update_quote_financials(quote.pk, {'tax_rate': '0.5'})
        self.assertIn('tax_rate', ctx.exception.message_dict)

    def test_flat_discount_above_subtotal_rejected(self):
        quote = self.make_quote()
        self.add_scenario_items(quote)
        with self.assertRaises(ValidationError) as ctx:
            update_quote_financials(quote.pk, {'discount_amount': '300'})
        self.assertIn('discount_amount', ctx.exception.message_dict)

    def test_accepted_quote_cannot_be_edited(self):
        quote = self.make_quote(status=Quote.STATUS_ACCEPTED)
        with self.assertRaises(QuoteStateError):
            update_quote_financials(quote.pk, {'discount_percentage': '5'})

    def test_delete_quote_removes_children(self):
        quote = self.make_quote()
        self.add_scenario_items(quote)
        QuoteResponse.objects.create(quote=quote, action=QuoteResponse.ACTION_DECLINED)
        QuoteMedia.objects.create(quote=quote, media_url='https://cdn.example.com/kitchen.jpg')
        QuoteAccessToken.objects.create(quote=quote, expires_at=timezone.now() + timedelta(days=1))

        delete_quote(quote.pk)

        self.assertFalse(Quote.objects.exists())
        self.assertFalse(QuoteLineItem.objects.exists())
        self.assertFalse(QuoteResponse.objects.exists())
        self.assertFalse(QuoteMedia.objects.exists())
        self.assertFalse(QuoteAccessToken.objects.exists())

    def test_delete_quote_with_project_rejected(self):
        quote = self.make_quote()
        self.add_scenario_items(quote)
        Project.objects.create(user=self.user, origin_quote=quote, name=quote.title)
        with self.assertRaises(QuoteStateError):
            delete_quote(quote.pk)
        self.assertEqual(QuoteLineItem.objects.filter(quote=quote).count(), 2)


class QuoteLifecycleTests(QuoteTestMixin, TestCase):
    def setUp(self):
        self.user = self.make_user()
        self.quote = self.make_quote()
        self.add_scenario_items(self.quote)

    def test_send_sets_status_and_emails_customer(self):
        quote, token = transition_to_sent(self.quote.pk)
        self.assertEqual(quote.status, Quote.STATUS_SENT)
        self.assertIsNotNone(quote.sent_at)
        self.assertEqual(token.expires_at, quote.valid_until)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['dana@example.com'])
        self.assertIn(token.token, mail.outbox[0].body)
        self.assertIn('$275.00', mail.outbox[0].body)

    def test_send_requires_customer_contact(self):
        Quote.objects.filter(pk=self.quote.pk).update(customer_email='', customer_name='')
        with self.assertRaises(ValidationError) as ctx:
            transition_to_sent(self.quote.pk)
        self.assertEqual(set(ctx.exception.message_dict), {'customer_name', 'customer_email'})
        self.quote.refresh_from_db()
        self.assertEqual(self.quote.status, Quote.STATUS_DRAFT)

    def test_send_survives_email_failure(self):
        with mock.patch('quotes.notifications.send_mail', side_effect=OSError('smtp down')):
            quote, _ = transition_to_sent(self.quote.pk)
        quote.refresh_from_db()
        self.assertEqual(quote.status, Quote.STATUS_SENT)

    @override_settings(CHAT_SERVICE_URL='http://chat.test/api', CHAT_SERVICE_API_KEY='chat-key')
    def test_send_opens_chat_channel(self):
        response = mock.Mock()
        response.json.return_value = {'id': 'chan-9'}
        with mock.patch('quotes.chat.requests.post', return_value=response) as post:
            quote, _ = transition_to_sent(self.quote.pk)
        self.assertEqual(quote.chat_channel_id, 'chan-9')
        args, kwargs = post.call_args
        self.assertEqual(args[0], 'http://chat.test/api/channels')
        self.assertEqual(kwargs['headers'], {'Authorization': 'Bearer chat-key'})
        self.assertEqual(kwargs['timeout'], 10)

    @override_settings(CHAT_SERVICE_URL='http://chat.test/api')
    def test_send_survives_chat_failure(self):
        with mock.patch('quotes.chat.requests.post', side_effect=requests.ConnectionError('refused')):
            quote, _ = transition_to_sent(self.quote.pk)
        quote.refresh_from_db()
        self.assertEqual(quote.status, Quote.STATUS_SENT)
        self.assertEqual(quote.chat_channel_id, '')

    def test_accepted_quote_cannot_be_resent(self):
        Quote.objects.filter(pk=self.quote.pk).update(status=Quote.STATUS_ACCEPTED)
        with self.assertRaises(QuoteStateError):
            transition_to_sent(self.quote.pk)

    def test_view_moves_sent_to_viewed_once(self):
        transition_to_sent(self.quote.pk)
        mail.outbox = []
        quote = record_view(self.quote.pk)
        first_viewed_at = quote.viewed_at
        self.assertEqual(quote.status, Quote.STATUS_VIEWED)
        quote = record_view(self.quote.pk)
        self.assertEqual(quote.status, Quote.STATUS_VIEWED)
        self.assertGreaterEqual(quote.viewed_at, first_viewed_at)
        self.assertEqual(mail.outbox, [])

    def test_view_of_draft_only_touches_timestamp(self):
        quote = record_view(self.quote.pk)
        self.assertEqual(quote.status, Quote.STATUS_DRAFT)
        self.assertIsNotNone(quote.viewed_at)

    def test_decline_is_terminal_for_customers(self):
        transition_to_sent(self.quote.pk)
        quote, response = record_response(self.quote.pk, 'declined', {
            'customer_name': 'Dana Smith',
            'message': 'Too expensive',
            'ip_address': '203.0.113.5',
        })
        self.assertEqual(quote.status, Quote.STATUS_DECLINED)
        self.assertEqual(response.ip_address, '203.0.113.5')
        self.assertEqual(response.message, 'Too expensive')

        with self.assertRaises(QuoteStateError):
            record_response(self.quote.pk, 'accepted')

    def test_staff_can_resend_declined_quote(self):
        transition_to_sent(self.quote.pk)
        record_response(self.quote.pk, 'declined')
        quote, _ = transition_to_sent(self.quote.pk)
        self.assertEqual(quote.status, Quote.STATUS_SENT)
        self.assertIsNone(quote.responded_at)

    def test_accept_leaves_quote_payment_pending(self):
        transition_to_sent(self.quote.pk)
        record_view(self.quote.pk)
        quote, response = record_response(self.quote.pk, 'accepted', {'customer_name': 'Dana Smith'})
        self.assertEqual(quote.status, Quote.STATUS_VIEWED)
        self.assertIsNotNone(quote.responded_at)
        self.assertTrue(quote.is_payment_pending)
        self.assertEqual(response.action, QuoteResponse.ACTION_ACCEPTED)

    def test_draft_cannot_be_responded_to(self):
        with self.assertRaises(QuoteStateError):
            record_response(self.quote.pk, 'accepted')

    def test_expired_quote_cannot_be_responded_to(self):
        transition_to_sent(self.quote.pk)
        Quote.objects.filter(pk=self.quote.pk).update(valid_until=timezone.now() - timedelta(days=1))
        with self.assertRaises(ValidationError) as ctx:
            record_response(self.quote.pk, 'accepted')
        self.assertIn('valid_until', ctx.exception.message_dict)

    def test_unknown_action_rejected(self):
        transition_to_sent(self.quote.pk)
        with self.assertRaises(ValidationError):
            record_response(self.quote.pk, 'maybe')

    def test_access_token_lookup(self):
        _, token = transition_to_sent(self.quote.pk)
        self.assertEqual(get_quote_by_access_token(token.token), self.quote)
        self.assertIsNone(get_quote_by_access_token('not-a-token'))
        QuoteAccessToken.objects.filter(pk=token.pk).update(expires_at=timezone.now() - timedelta(minutes=1))
        self.assertIsNone(get_quote_by_access_token(token.token))


class QuoteManagementCommandTests(QuoteTestMixin, TestCase):
    def setUp(self):
        self.user = self.make_user()

    def test_normalize_tax_rates(self):
        legacy = self.make_quote(tax_rate=Decimal('0.106'))
        modern = self.make_quote(tax_rate=Decimal('8.25'))
        ambiguous = self.make_quote(tax_rate=Decimal('0.005'))

        out = StringIO()
        call_command('normalize_tax_rates', stdout=out)

        legacy.refresh_from_db()
        modern.refresh_from_db()
        ambiguous.refresh_from_db()
        self.assertEqual(legacy.tax_rate, Decimal('10.6'))
        self.assertEqual(modern.tax_rate, Decimal('8.25'))
        self.assertEqual(ambiguous.tax_rate, Decimal('0.005'))
        self.assertIn('1 need manual review', out.getvalue())

    def test_normalize_tax_rates_dry_run(self):
        legacy = self.make_quote(tax_rate=Decimal('0.106'))
        out = StringIO()
        call_command('normalize_tax_rates', '--dry-run', stdout=out)
        legacy.refresh_from_db()
        self.assertEqual(legacy.tax_rate, Decimal('0.106'))
        self.assertIn('Would convert 1', out.getvalue())

    def test_normalized_rate_keeps_totals(self):
        quote = self.make_quote(tax_rate=Decimal('0.106'))
        self.add_scenario_items(quote)
        before = recompute_totals(quote.pk)
        call_command('normalize_tax_rates', stdout=StringIO())
        self.assertEqual(recompute_totals(quote.pk), before)

    def test_recalculate_quote_totals(self):
        quote = self.make_quote()
        self.add_scenario_items(quote)
        Quote.objects.filter(pk=quote.pk).update(total=Decimal('0.00'))
        out = StringIO()
        call_command('recalculate_quote_totals', '--quote', str(quote.pk), stdout=out)
        quote.refresh_from_db()
        self.assertEqual(quote.total, Decimal('275.00'))
        self.assertIn(quote.quote_number, out.getvalue())


class QuoteAdminTests(QuoteTestMixin, TestCase):
    def setUp(self):
        self.user = self.make_user()
        self.superuser = User.objects.create_superuser(username='admin', password='p', email='admin@kolmo.test')
        self.request = RequestFactory().get('/admin/quotes/quote/')
        self.request.user = self.superuser
        self.model_admin = QuoteAdmin(Quote, admin.site)

    def admin_form(self, quote, **changes):
        data = model_to_dict(quote)
        data.update(changes)
        return QuoteAdminForm(data=data, instance=quote)

    def test_form_rejects_percentages_not_totalling_100(self):
        quote = self.make_quote()
        form = self.admin_form(quote, down_payment_percentage=50, milestone_payment_percentage=50, final_payment_percentage=50)
        self.assertFalse(form.is_valid())
        self.assertIn('must total 100 (got 150)', str(form.non_field_errors()))

    def test_form_accepts_valid_split(self):
        quote = self.make_quote()
        form = self.admin_form(quote, down_payment_percentage=30, milestone_payment_percentage=50, final_payment_percentage=20)
        form.is_valid()
        self.assertEqual(form.non_field_errors(), [])

    def test_accepted_quote_is_read_only(self):
        accepted = self.make_quote(status=Quote.STATUS_ACCEPTED)
        draft = self.make_quote()

        self.assertFalse(self.model_admin.has_change_permission(self.request, accepted))
        self.assertFalse(self.model_admin.has_delete_permission(self.request, accepted))
        self.assertIn('down_payment_percentage', self.model_admin.get_readonly_fields(self.request, accepted))
        self.assertTrue(self.model_admin.has_change_permission(self.request, draft))
        self.assertNotIn('down_payment_percentage', self.model_admin.get_readonly_fields(self.request, draft))

        inline = QuoteLineItemInline(Quote, admin.site)
        self.assertFalse(inline.has_add_permission(self.request, accepted))
        self.assertFalse(inline.has_change_permission(self.request, accepted))
        self.assertFalse(inline.has_delete_permission(self.request, accepted))
        self.assertTrue(inline.has_add_permission(self.request, draft))

    def test_change_page_for_accepted_quote_cannot_save(self):
        accepted = self.make_quote(status=Quote.STATUS_ACCEPTED)
        self.client.force_login(self.superuser)
        resp = self.client.get(f'/admin/quotes/quote/{accepted.pk}/change/')
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.context['has_change_permission'])

        resp = self.client.post(f'/admin/quotes/quote/{accepted.pk}/change/', {'title': 'Changed'})
        self.assertEqual(resp.status_code, 403)
        accepted.refresh_from_db()
        self.assertEqual(accepted.title, 'Kitchen remodel')

    def test_line_item_save_skips_recompute_for_accepted_quote(self):
        accepted = self.make_quote(status=Quote.STATUS_ACCEPTED)
        draft = self.make_quote()
        formset = mock.Mock(model=QuoteLineItem)

        with mock.patch('quotes.admin.recompute_totals') as recompute:
            self.model_admin.save_formset(self.request, mock.Mock(instance=accepted), formset, True)
            recompute.assert_not_called()
            self.model_admin.save_formset(self.request, mock.Mock(instance=draft), formset, True)
            recompute.assert_called_once_with(draft.pk)
