"""Duplicate-confirmation guard for processor payment references.

The guard is two things working together: the read below, consulted before any
confirmation-driven insert, and the partial unique constraints on
``Invoice.external_payment_reference`` / ``Payment.external_payment_reference``
which decide the race when two confirmations read "nothing yet" at once.
"""
from .models import Invoice, Payment


def find_invoice_by_payment_reference(reference):
    if not reference:
        return None
    return (
        Invoice.objects
        .select_related('project', 'quote')
        .filter(external_payment_reference=reference)
        .first()
    )


def find_payment_by_reference(reference):
    if not reference:
        return None
    return Payment.objects.filter(external_payment_reference=reference).first()
