from __future__ import annotations

import json
from pathlib import Path
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from gearflow.config import settings


logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / 'templates' / 'email'
templates = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(['html']),
    trim_blocks=True,
    lstrip_blocks=True,
)


class EmailDeliveryError(RuntimeError):
    pass


def render_email(template_name: str, **context) -> tuple[str, str]:
    html = templates.get_template(f'{template_name}.html').render(**context)
    text = templates.get_template(f'{template_name}.txt').render(**context)
    return html, text


def _provider_post(path: str, payload: dict) -> dict:
    if not settings.resend_api_key:
        raise EmailDeliveryError('RESEND_API_KEY is not configured')

    req = Request(
        url=f"{settings.email_api_base_url.rstrip('/')}{path}",
        data=json.dumps(payload).encode('utf-8'),
        headers={
            'Authorization': f'Bearer {settings.resend_api_key}',
            'Content-Type': 'application/json',
        },
        method='POST',
    )
    try:
        with urlopen(req, timeout=settings.email_timeout_seconds) as response:
            return json.loads(response.read().decode('utf-8') or '{}')
    except HTTPError as exc:
        body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
        raise EmailDeliveryError(f'Email API error {exc.code}: {body}') from exc
    except URLError as exc:
        raise EmailDeliveryError(f'Email API network error: {exc.reason}') from exc


def send_email(*, to: str | list[str], subject: str, html: str, text: str | None = None) -> dict:
    recipients = [to] if isinstance(to, str) else list(to)
    if not recipients:
        raise EmailDeliveryError('No recipients')

    payload: dict = {
        'from': settings.resend_from,
        'to': recipients,
        'subject': subject,
        'html': html,
    }
    if text:
        payload['text'] = text
    result = _provider_post('/emails', payload)
    logger.info('email_sent', to=recipients, subject=subject, provider_id=result.get('id'))
    return result


def send_template_email(*, to: str | list[str], subject: str, template_name: str, **context) -> dict:
    html, text = render_email(template_name, subject=subject, **context)
    return send_email(to=to, subject=subject, html=html, text=text)
