"""Reenvío del formulario de contacto por el proveedor de correo transaccional."""

import html
from typing import Any, Dict
import requests
import structlog
from config import get_settings

logger = structlog.get_logger(__name__)

BREVO_URL = 'https://api.brevo.com/v3/smtp/email'
SENDER_NAME = 'Phage Contact Form'


class EmailError(Exception):
    pass


# render_contact_html: Cuerpo HTML con la entrada del usuario escapada.
def render_contact_html(name: str, email: str, subject: str, message: str) -> str:
    body = html.escape(message).replace('\n', '<br>')
    return (
        "<h2>New Contact Form Submission</h2>"
        f"<p><strong>From:</strong> {html.escape(name)} ({html.escape(email)})</p>"
        f"<p><strong>Subject:</strong> {html.escape(subject)}</p>"
        "<hr />"
        f"<p>{body}</p>"
    )


def send_contact_email(name: str, email: str, subject: str, message: str) -> Dict[str, Any]:
    """Envía el mensaje al administrador con reply-to del remitente."""
    settings = get_settings()
    settings.require_email()
    payload = {
        'sender': {'name': SENDER_NAME, 'email': settings.sender_email},
        'to': [{'email': settings.admin_email, 'name': 'Admin'}],
        'replyTo': {'email': email, 'name': name},
        'subject': f"[Contact Form] {subject}",
        'htmlContent': render_contact_html(name, email, subject, message),
    }
    headers = {
        'api-key': settings.email_api_key,
        'Content-Type': 'application/json',
        'accept': 'application/json',
    }
    try:
        resp = requests.post(BREVO_URL, json=payload, headers=headers, timeout=settings.email_timeout)
    except requests.RequestException as e:
        logger.error("contact_email_failed", error=str(e))
        raise EmailError(f"Failed to send email: {e}") from e
    if not resp.ok:
        logger.error("contact_email_failed", status=resp.status_code, body=resp.text)
        raise EmailError(f"Failed to send email: {resp.text}")

    data = resp.json()
    logger.info("contact_email_sent", message_id=data.get('messageId'))
    return {'success': True, 'message_id': data.get('messageId')}
