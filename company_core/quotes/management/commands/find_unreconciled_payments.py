from django.core.management.base import BaseCommand
from django.db.models import Q

from quotes.models import Invoice, Payment, Quote


class Command(BaseCommand):
    help = 'Finds settled payments whose invoice is not paid or whose quote was never accepted.'

    def handle(self, *args, **kwargs):
        payments = (
            Payment.objects
            .filter(status='succeeded')
            .filter(
                ~Q(invoice__status=Invoice.STATUS_PAID)
                | (
                    Q(invoice__invoice_type=Invoice.TYPE_DOWN_PAYMENT)
                    & Q(invoice__quote__isnull=False)
                    & ~Q(invoice__quote__status=Quote.STATUS_ACCEPTED)
                )
            )
            .select_related('invoice', 'invoice__quote', 'invoice__project')
            .order_by('id')
        )

        count = payments.count()
        self.stdout.write(f"Total Unreconciled Payments Found: {count}")
        if count == 0:
            self.stdout.write(self.style.SUCCESS('No unreconciled payments found.'))
            return

        self.stdout.write(self.style.WARNING('Payments that need manual reconciliation:'))
        for payment in payments:
            invoice = payment.invoice
            quote = invoice.quote
            self.stdout.write(
                f"Reference: {payment.external_payment_reference or '-'}, "
                f"Invoice: {invoice.invoice_number} ({invoice.status}), "
                f"Project: {invoice.project.name}, "
                f"Quote: {quote.quote_number + ' (' + quote.status + ')' if quote else '-'}, "
                f"Amount: ${payment.amount}"
            )
