from django.core.management.base import BaseCommand, CommandError

from quotes.line_items import recompute_totals
from quotes.models import Quote


class Command(BaseCommand):
    help = 'Recalculates persisted totals for quotes from their line items'

    def add_arguments(self, parser):
        parser.add_argument('--quote', type=int, help='Only recalculate the quote with this id')
        parser.add_argument(
            '--include-accepted',
            action='store_true',
            help='Also recalculate accepted quotes (their totals are normally frozen)',
        )

    def handle(self, *args, **options):
        quotes = Quote.objects.all().order_by('id')
        if options['quote']:
            quotes = quotes.filter(pk=options['quote'])
            if not quotes.exists():
                raise CommandError(f"Quote {options['quote']} does not exist")
        if not options['include_accepted']:
            quotes = quotes.exclude(status=Quote.STATUS_ACCEPTED)

        count = 0
        for quote in quotes:
            totals = recompute_totals(quote.pk)
            count += 1
            self.stdout.write(self.style.SUCCESS(
                f'Recalculated total for quote {quote.quote_number} - ${totals.total:.2f}'
            ))
        self.stdout.write(f'{count} quote(s) recalculated.')
