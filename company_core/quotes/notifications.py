import logging
from smtplib import SMTPException

from django.conf import settings
from django.core.mail import mail_admins, send_mail
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _branding(context):
    merged = {
        'business_name': getattr(settings, 'DEFAULT_BUSINESS_NAME', ''),
        'business_email': getattr(settings, 'DEFAULT_BUSINESS_EMAIL', ''),
        'site_url': getattr(settings, 'SITE_URL', '').rstrip('/'),
    }
    merged.update(context)
    return merged


def send_notification(to_address, subject, body):
    """Send a plain-text email. Returns True on success; never raises."""
    if not to_address:
        logger.warning("Skipping notification %r: no recipient address", subject)
        return False
    try:
        send_mail(
            subject,
            body,
            settings.DEFAULT_FROM_EMAIL,
            [to_address],
            fail_silently=False,
        )
    except (SMTPException, OSError):
        logger.exception("Failed to send %r to %s", subject, to_address)
        return False
    logger.info("Email %r sent to %s", subject, to_address)
    return True


def send_templated_notification(to_address, subject, template_name, context):
    body = render_to_string(f'quotes/email/{template_name}', _branding(context))
    return send_notification(to_address, subject, body)


def public_quote_url(token):
    return f"{settings.SITE_URL.rstrip('/')}/quotes/view/{token}"


def notify_quote_sent(quote, access_token):
    return send_templated_notification(
        quote.customer_email,
        f"Your quote {quote.quote_number} - {quote.title}",
        'quote_sent.txt',
        {
            'quote': quote,
            'quote_url': public_quote_url(access_token.token),
        },
    )


def notify_project_welcome(project, invoice):
    return send_templated_notification(
        project.customer_email,
        f"Welcome to Your Project - {project.name}",
        'project_welcome.txt',
        {'project': project, 'invoice': invoice},
    )


def notify_payment_instructions(invoice, client_secret):
    return send_templated_notification(
        invoice.customer_email,
        f"{invoice.get_invoice_type_display()} Required - {invoice.project.name}",
        'payment_instructions.txt',
        {
            'invoice': invoice,
            'project': invoice.project,
            'payment_url': f"{settings.SITE_URL.rstrip('/')}/payment/{client_secret}",
        },
    )


def notify_payment_received(invoice, payment):
    return send_templated_notification(
        invoice.customer_email,
        f"Payment Confirmation - {invoice.get_invoice_type_display()} Received",
        'payment_received.txt',
        {'invoice': invoice, 'payment': payment, 'project': invoice.project},
    )


def alert_operators(subject, message):
    """Operator-visible alert for problems that need a human (e.g. orphaned payments)."""
    try:
        mail_admins(subject, message, fail_silently=False)
    except (SMTPException, OSError):
        logger.exception("Failed to deliver operator alert %r", subject)
