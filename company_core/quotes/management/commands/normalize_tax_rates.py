from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from quotes.ledger import TaxRate
from quotes.models import Quote

ONE = Decimal('1')
RATE_PLACES = Decimal('0.0001')


class Command(BaseCommand):
    help = 'Rewrites tax rates stored in decimal form (0.106) as percentages (10.6)'

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='Report what would change without saving')

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        candidates = Quote.objects.filter(tax_rate__gt=0, tax_rate__lte=ONE).order_by('id')

        converted = 0
        ambiguous = []
        with transaction.atomic():
            for quote in candidates.select_for_update():
                percent = TaxRate.from_stored(quote.tax_rate).as_percent().quantize(RATE_PLACES)
                if percent <= ONE:
                    # Would be read back as a decimal again.
                    ambiguous.append(quote)
                    continue
                self.stdout.write(f'{quote.quote_number}: {quote.tax_rate} -> {percent}')
                if not dry_run:
                    Quote.objects.filter(pk=quote.pk).update(tax_rate=percent)
                converted += 1

        for quote in ambiguous:
            self.stdout.write(self.style.WARNING(
                f'{quote.quote_number}: rate {quote.tax_rate} is below 1% and cannot be stored as a percentage; '
                f'switch it to a manual tax amount.'
            ))

        verb = 'Would convert' if dry_run else 'Converted'
        self.stdout.write(self.style.SUCCESS(f'{verb} {converted} tax rate(s); {len(ambiguous)} need manual review.'))
