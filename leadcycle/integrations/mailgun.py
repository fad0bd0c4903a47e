import os
from typing import Any, Dict, Mapping, Optional

import httpx

from leadcycle.templates import TemplateNotFound, render


MAILGUN_BASE_URL = os.getenv("MAILGUN_BASE_URL", "https://api.mailgun.net/v3")
DEFAULT_TIMEOUT = float(os.getenv("MAILGUN_TIMEOUT_SECONDS", "10"))
DEFAULT_SENDER = os.getenv("MAILGUN_FROM", "Cleantech Directory <noreply@mg.example.com>")


class TransportError(RuntimeError):
    """Raised when an email could not be handed to Mailgun."""


def _credentials() -> tuple:
    api_key = os.getenv("MAILGUN_API_KEY")
    domain = os.getenv("MAILGUN_DOMAIN")
    if not api_key or not domain:
        raise TransportError("Mailgun API key or domain not configured")
    return api_key, domain


def is_configured() -> bool:
    return bool(os.getenv("MAILGUN_API_KEY") and os.getenv("MAILGUN_DOMAIN"))


async def send_email(
    to: str,
    template_type: str,
    context: Mapping[str, Any],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Render a drip template and deliver it through the Mailgun messages API.

    Args:
        to: Recipient address.
        template_type: One of the drip template keys (day3, day7, day14).
        context: Personalization values merged into the template.
        transport: Optional httpx transport, used by tests.

    Returns:
        dict: Mailgun response payload (``id`` and ``message``).

    Raises:
        TransportError: Missing configuration, unknown template, timeout,
        network failure or a non-2xx response.
    """
    api_key, domain = _credentials()
    try:
        email = render(template_type, context)
    except TemplateNotFound as exc:
        raise TransportError(str(exc)) from exc

    data = {
        "from": DEFAULT_SENDER,
        "to": to,
        "subject": email.subject,
        "html": email.html,
        "text": email.text,
    }
    url = f"{MAILGUN_BASE_URL}/{domain}/messages"

    try:
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=transport) as client:
            response = await client.post(url, data=data, auth=("api", api_key))
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as exc:
        detail = exc.response.text[:200]
        raise TransportError(f"Mailgun rejected message: {exc.response.status_code} {detail}") from exc
    except (httpx.HTTPError, ValueError) as exc:
        raise TransportError(f"Mailgun request failed: {exc}") from exc
