"""Turns a customer's acceptance into a project, a paid invoice and a payment.

Two calls make up the down-payment flow:

``initiate_acceptance``
    Validates the customer, makes sure the quote has a project to land in and
    asks the processor for an authorization. No invoice or payment exists yet.

``confirm_payment``
    Called from the public confirm endpoint and from the processor webhook,
    possibly several times for the same reference. The unique constraints on
    ``external_payment_reference`` decide who wins; everybody else gets the
    winner's records back.

Milestone and final installments reuse ``confirm_payment``: their
authorizations carry an ``invoice_id`` pointing at a pending invoice.
"""
import logging
import secrets
import string
from collections import namedtuple
from datetime import timedelta

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from .exceptions import (
    DuplicateConfirmationResolved,
    OrphanedPaymentError,
    PaymentNotSettledError,
    QuoteStateError,
)
from .idempotency import find_invoice_by_payment_reference, find_payment_by_reference
from .ledger import ZERO, calculate_installment, quantize_money
from .line_items import get_quote_for_display
from .models import Invoice, Payment, Project, Quote
from .notifications import (
    alert_operators,
    notify_payment_instructions,
    notify_payment_received,
    notify_project_welcome,
)
from .payment_gateway import STATUS_SUCCEEDED, get_payment_gateway

logger = logging.getLogger(__name__)

INVOICE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
INSTALLMENT_DUE_DAYS = {
    Invoice.TYPE_MILESTONE: 14,
    Invoice.TYPE_FINAL: 7,
}

AuthorizationHandle = namedtuple('AuthorizationHandle', ['id', 'client_secret', 'amount'])
PaymentConfirmation = namedtuple('PaymentConfirmation', ['project', 'invoice', 'payment', 'created'])
Installment = namedtuple('Installment', ['amount', 'percentage', 'description'])
PaymentSchedule = namedtuple('PaymentSchedule', ['down_payment', 'milestone_payment', 'final_payment'])


def generate_invoice_number(today=None):
    """``INV-YYYYMM-XXXXXX``. Uniqueness is left to the database."""
    today = today or timezone.localdate()
    suffix = ''.join(secrets.choice(INVOICE_SUFFIX_ALPHABET) for _ in range(6))
    return f"INV-{today:%Y%m}-{suffix}"


def calculate_payment_schedule(quote):
    """Split ``quote.total`` into its three installments.

    The final installment absorbs rounding so the three amounts always add up
    to the quote total.
    """
    total = quantize_money(quote.total)
    down = calculate_installment(total, quote.down_payment_percentage)
    milestone = calculate_installment(total, quote.milestone_payment_percentage)
    final = quantize_money(total - down - milestone) if quote.final_payment_percentage else ZERO
    return PaymentSchedule(
        down_payment=Installment(
            amount=down,
            percentage=quote.down_payment_percentage,
            description=f"Down payment ({quote.down_payment_percentage}%) for {quote.title}",
        ),
        milestone_payment=Installment(
            amount=milestone,
            percentage=quote.milestone_payment_percentage,
            description=quote.milestone_description or 'Project milestone completion',
        ),
        final_payment=Installment(
            amount=final,
            percentage=quote.final_payment_percentage,
            description=f"Final payment ({quote.final_payment_percentage}%) for {quote.title}",
        ),
    )


def clean_customer_info(customer_info):
    """Return ``(name, email, phone)`` or raise ValidationError keyed by field."""
    customer_info = customer_info or {}
    name = (customer_info.get('name') or '').strip()
    email = (customer_info.get('email') or '').strip()
    phone = (customer_info.get('phone') or '').strip()

    errors = {}
    if not name:
        errors['name'] = ["Customer name is required."]
    if not email:
        errors['email'] = ["Customer email is required."]
    else:
        try:
            validate_email(email)
        except ValidationError:
            errors['email'] = ["Enter a valid email address."]
    if errors:
        raise ValidationError(errors)
    return name, email, phone


class AcceptancePaymentCoordinator:

    def __init__(self, gateway=None):
        self._gateway = gateway

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    @property
    def currency(self):
        return getattr(settings, 'PAYMENT_CURRENCY', 'usd')

    # Down payment

    def initiate_acceptance(self, quote_id, customer_info):
        name, email, phone = clean_customer_info(customer_info)

        with transaction.atomic():
            quote = Quote.objects.select_for_update().get(pk=quote_id)
            if quote.status not in Quote.AWAITING_RESPONSE_STATUSES:
                raise QuoteStateError({'status': [f"Quote {quote.quote_number} is {quote.status} and cannot be accepted."]})
            if quote.is_expired():
                raise ValidationError({'valid_until': ["This quote has expired."]})

            quote = get_quote_for_display(quote)
            schedule = calculate_payment_schedule(quote)
            amount = schedule.down_payment.amount
            if amount <= 0:
                raise ValidationError({'total': ["Quote has no down payment to collect."]})

            project = self._project_for_quote(quote, name, email, phone)
            # A processor failure rolls back the project as well.
            authorization = self.gateway.create_authorization(
                amount,
                self.currency,
                {
                    'quote_id': quote.pk,
                    'project_id': project.pk,
                    'payment_type': Invoice.TYPE_DOWN_PAYMENT,
                    'percentage': quote.down_payment_percentage,
                    'quote_number': quote.quote_number,
                },
            )

        logger.info(
            "Down payment authorization %s requested for quote %s (%s %s)",
            authorization.id,
            quote.quote_number,
            amount,
            self.currency,
        )
        return AuthorizationHandle(id=authorization.id, client_secret=authorization.client_secret, amount=amount)

    def _project_for_quote(self, quote, name, email, phone):
        project, created = Project.objects.get_or_create(
            origin_quote=quote,
            defaults={
                'user': quote.user,
                'name': quote.title,
                'description': quote.description or f"Project created from Quote #{quote.quote_number}",
                'address': quote.customer_address or quote.location,
                'total_budget': quote.total,
                'start_date': quote.estimated_start_date,
                'estimated_completion_date': quote.estimated_completion_date,
                'customer_name': name,
                'customer_email': email,
                'customer_phone': phone,
            },
        )
        if created:
            logger.info("Project %s created from quote %s", project.pk, quote.quote_number)
        return project

    # Confirmation

    def confirm_payment(self, reference):
        """Record a settled authorization exactly once. Returns a PaymentConfirmation."""
        if not reference:
            raise ValidationError({'reference': ["A payment reference is required."]})

        details = self.gateway.retrieve_authorization(reference)
        if details.status != STATUS_SUCCEEDED:
            raise PaymentNotSettledError(reference, details.status)

        try:
            self._check_not_recorded(reference)
            if details.metadata.get('invoice_id'):
                result = self._settle_installment(details)
            else:
                result = self._settle_down_payment(details)
        except DuplicateConfirmationResolved as resolved:
            logger.info("%s Returning the recorded invoice.", resolved)
            return self._recorded_confirmation(reference)

        transaction.on_commit(lambda: self._send_confirmation_email(result))
        return result

    def _check_not_recorded(self, reference):
        if find_invoice_by_payment_reference(reference) is not None:
            raise DuplicateConfirmationResolved(reference)

    def _recorded_confirmation(self, reference):
        invoice = find_invoice_by_payment_reference(reference)
        payment = find_payment_by_reference(reference) or invoice.payments.order_by('id').first()
        return PaymentConfirmation(project=invoice.project, invoice=invoice, payment=payment, created=False)

    def _orphaned(self, reference, reason, metadata):
        error = OrphanedPaymentError(reference, reason, metadata)
        logger.critical("%s metadata=%s", error, metadata)
        alert_operators(
            f"Unreconciled payment {reference}",
            f"{error}\n\nProcessor metadata: {metadata}\n\n"
            "The customer has been charged but no invoice was recorded. "
            "Reconcile this payment by hand.",
        )
        return error

    def _resolve_down_payment_project(self, reference, metadata):
        project_id = metadata.get('project_id')
        if not project_id:
            raise self._orphaned(reference, "authorization carries no project_id", metadata)
        try:
            project = Project.objects.select_related('origin_quote').get(pk=int(project_id))
        except (Project.DoesNotExist, ValueError):
            raise self._orphaned(reference, f"project {project_id} does not exist", metadata)

        quote = project.origin_quote
        if quote is None:
            raise self._orphaned(reference, f"project {project.pk} has no originating quote", metadata)
        quote_id = metadata.get('quote_id')
        if quote_id and str(quote.pk) != str(quote_id):
            raise self._orphaned(
                reference,
                f"project {project.pk} belongs to quote {quote.pk}, not {quote_id}",
                metadata,
            )
        return project, quote

    def _insert_with_fresh_number(self, reference, insert):
        """Run ``insert(invoice_number)`` in a savepoint, retrying on number collisions.

        A unique violation on a payment reference that the guard can now see is
        a lost race and is re-raised as DuplicateConfirmationResolved.
        """
        max_attempts = getattr(settings, 'INVOICE_NUMBER_MAX_ATTEMPTS', 5)
        for attempt in range(1, max_attempts + 1):
            invoice_number = generate_invoice_number()
            try:
                with transaction.atomic():
                    return insert(invoice_number)
            except IntegrityError:
                if reference and find_invoice_by_payment_reference(reference) is not None:
                    raise DuplicateConfirmationResolved(reference)
                logger.warning(
                    "Invoice insert %s conflicted (attempt %s of %s); retrying with a new number",
                    invoice_number,
                    attempt,
                    max_attempts,
                )
        raise DatabaseError(f"Could not allocate a unique invoice number after {max_attempts} attempts.")

    def _settle_down_payment(self, details):
        reference = details.id
        project, quote = self._resolve_down_payment_project(reference, details.metadata)
        if quote.status == Quote.STATUS_ACCEPTED:
            logger.warning(
                "Quote %s is already accepted; recording additional down payment %s",
                quote.quote_number,
                reference,
            )
        percentage = details.metadata.get('percentage') or quote.down_payment_percentage
        now = timezone.now()

        def insert(invoice_number):
            invoice = Invoice.objects.create(
                project=project,
                quote=quote,
                invoice_number=invoice_number,
                amount=details.amount,
                description=f"Down payment ({percentage}%) for {quote.title}",
                status=Invoice.STATUS_PAID,
                invoice_type=Invoice.TYPE_DOWN_PAYMENT,
                external_payment_reference=reference,
                customer_name=project.customer_name or quote.customer_name,
                customer_email=project.customer_email or quote.customer_email,
                paid_at=now,
            )
            payment = Payment.objects.create(
                invoice=invoice,
                amount=details.amount,
                payment_date=now,
                external_payment_reference=reference,
                charge_id=details.charge_id,
            )
            Quote.objects.filter(pk=quote.pk).update(
                status=Quote.STATUS_ACCEPTED,
                responded_at=quote.responded_at or now,
                updated_at=now,
            )
            return invoice, payment

        invoice, payment = self._insert_with_fresh_number(reference, insert)
        logger.info(
            "Down payment %s recorded: invoice %s, quote %s accepted",
            reference,
            invoice.invoice_number,
            quote.quote_number,
        )
        return PaymentConfirmation(project=project, invoice=invoice, payment=payment, created=True)

    def _settle_installment(self, details):
        reference = details.id
        metadata = details.metadata
        invoice_id = metadata.get('invoice_id')
        now = timezone.now()
        conflict = None

        try:
            with transaction.atomic():
                try:
                    invoice = (
                        Invoice.objects
                        .select_for_update()
                        .select_related('project')
                        .get(pk=int(invoice_id))
                    )
                except (Invoice.DoesNotExist, ValueError):
                    invoice = None
                else:
                    if invoice.external_payment_reference == reference:
                        raise DuplicateConfirmationResolved(reference)
                    if invoice.external_payment_reference:
                        conflict = f"invoice {invoice.invoice_number} was already settled by {invoice.external_payment_reference}"
                    elif metadata.get('project_id') and str(invoice.project_id) != str(metadata['project_id']):
                        conflict = f"invoice {invoice.invoice_number} does not belong to project {metadata['project_id']}"
                    else:
                        invoice.status = Invoice.STATUS_PAID
                        invoice.external_payment_reference = reference
                        invoice.paid_at = now
                        invoice.save(update_fields=['status', 'external_payment_reference', 'paid_at', 'updated_at'])
                        payment = Payment.objects.create(
                            invoice=invoice,
                            amount=details.amount,
                            payment_date=now,
                            external_payment_reference=reference,
                            charge_id=details.charge_id,
                        )
        except IntegrityError:
            if find_invoice_by_payment_reference(reference) is not None:
                raise DuplicateConfirmationResolved(reference)
            raise

        if invoice is None:
            raise self._orphaned(reference, f"invoice {invoice_id} does not exist", metadata)
        if conflict:
            raise self._orphaned(reference, conflict, metadata)

        if payment.amount != invoice.amount:
            logger.warning(
                "Installment %s settled for %s but invoice %s is for %s",
                reference,
                payment.amount,
                invoice.invoice_number,
                invoice.amount,
            )
        logger.info("Installment %s recorded against invoice %s", reference, invoice.invoice_number)
        return PaymentConfirmation(project=invoice.project, invoice=invoice, payment=payment, created=True)

    def _send_confirmation_email(self, result):
        if result.invoice.invoice_type == Invoice.TYPE_DOWN_PAYMENT:
            sent = notify_project_welcome(result.project, result.invoice)
        else:
            sent = notify_payment_received(result.invoice, result.payment)
        if not sent:
            logger.error(
                "Payment %s recorded but the confirmation email failed",
                result.payment.external_payment_reference,
            )

    # Installments

    def calculate_payment_schedule(self, quote):
        return calculate_payment_schedule(quote)

    def request_installment(self, project_id, invoice_type, description=None):
        """Issue a pending milestone or final invoice and an authorization to pay it."""
        if invoice_type not in INSTALLMENT_DUE_DAYS:
            raise ValidationError({'invoice_type': ["Must be 'milestone' or 'final'."]})

        with transaction.atomic():
            project = Project.objects.select_for_update().select_related('origin_quote').get(pk=project_id)
            quote = project.origin_quote
            if quote is None:
                raise ValidationError({'project': ["Project has no originating quote to bill against."]})
            if quote.status != Quote.STATUS_ACCEPTED:
                raise QuoteStateError({'status': ["The down payment for this project has not been confirmed."]})
            if project.invoices.filter(invoice_type=invoice_type).exists():
                raise ValidationError({'invoice_type': [f"A {invoice_type} invoice already exists for this project."]})

            schedule = calculate_payment_schedule(quote)
            installment = (
                schedule.milestone_payment if invoice_type == Invoice.TYPE_MILESTONE else schedule.final_payment
            )
            if installment.amount <= 0:
                raise ValidationError({'invoice_type': [f"Quote {quote.quote_number} has no {invoice_type} amount."]})

            today = timezone.localdate()

            def insert(invoice_number):
                return Invoice.objects.create(
                    project=project,
                    quote=quote,
                    invoice_number=invoice_number,
                    amount=installment.amount,
                    description=description or installment.description,
                    issue_date=today,
                    due_date=today + timedelta(days=INSTALLMENT_DUE_DAYS[invoice_type]),
                    status=Invoice.STATUS_PENDING,
                    invoice_type=invoice_type,
                    customer_name=project.customer_name,
                    customer_email=project.customer_email,
                )

            invoice = self._insert_with_fresh_number(None, insert)
            authorization = self.gateway.create_authorization(
                installment.amount,
                self.currency,
                {
                    'invoice_id': invoice.pk,
                    'project_id': project.pk,
                    'quote_id': quote.pk,
                    'payment_type': invoice_type,
                    'percentage': installment.percentage,
                },
            )
            invoice.authorization_id = authorization.id
            invoice.save(update_fields=['authorization_id', 'updated_at'])

        logger.info("Invoice %s issued for project %s (%s)", invoice.invoice_number, project.pk, invoice_type)
        if not notify_payment_instructions(invoice, authorization.client_secret):
            logger.error("Invoice %s issued but the payment instructions email failed", invoice.invoice_number)
        handle = AuthorizationHandle(id=authorization.id, client_secret=authorization.client_secret, amount=installment.amount)
        return invoice, handle
