"""Placeholder substitution for automation message templates.

Literal substring replacement over a fixed vocabulary; this is not a template
engine. Tokens whose source record is absent from the context, and tokens
outside the vocabulary, are left verbatim.

* ``{{firstName}}`` / ``{{lastName}}``: contact ``first_name`` / ``last_name``
* ``{{serviceType}}``: booking ``service_name`` (or ``service_type``)
* ``{{dateTime}}``: booking ``start_time``, human formatted
* ``{{portalLink}}`` / ``{{workspaceLink}}``: conversation view when a
  conversation is present, otherwise the tenant contact page
* ``{{conversationLink}}``: conversation view (conversation only)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dateutil import parser as date_parser

from app.services.context import AutomationContext

DATE_TIME_FORMAT = "%b %d, %Y at %I:%M %p UTC"


def format_date_time(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        try:
            value = date_parser.isoparse(value)
        except ValueError:
            return value
    if not isinstance(value, datetime):
        return str(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(DATE_TIME_FORMAT)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def conversation_link(base_url: str, conversation_id: Any) -> str:
    return f"{base_url}/view-message/{conversation_id}"


def workspace_link(base_url: str, context: AutomationContext) -> str:
    conversation_id = context.record_id("conversation")
    if conversation_id is not None:
        return conversation_link(base_url, conversation_id)
    return f"{base_url}/contact?workspace={context.tenant_id}"


def build_substitutions(context: AutomationContext, base_url: str) -> Dict[str, str]:
    """Token -> replacement for every token the context can fill."""
    values: Dict[str, str] = {}

    if context.contact is not None:
        values["{{firstName}}"] = _text(context.contact.get("first_name"))
        values["{{lastName}}"] = _text(context.contact.get("last_name"))

    if context.booking is not None:
        booking = context.booking
        values["{{serviceType}}"] = _text(booking.get("service_name") or booking.get("service_type"))
        values["{{dateTime}}"] = format_date_time(booking.get("start_time"))

    link = workspace_link(base_url, context)
    values["{{portalLink}}"] = link
    values["{{workspaceLink}}"] = link

    conversation_id = context.record_id("conversation")
    if conversation_id is not None:
        values["{{conversationLink}}"] = conversation_link(base_url, conversation_id)

    return values


def render_template(template: Optional[str], context: AutomationContext, base_url: str) -> str:
    """Substitute the known placeholders in ``template``.

    Pure and total: never raises for unknown tokens or missing values.
    """
    if not template:
        return ""
    rendered = template
    for token, replacement in build_substitutions(context, base_url.rstrip("/")).items():
        rendered = rendered.replace(token, replacement)
    return rendered
