from __future__ import annotations

from dataclasses import dataclass
from string import Template
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.config import get_settings
from grantflow.domain.models import NotificationOutbox, NotificationTemplate
from grantflow.persistence.repos import notifications as notif_repo


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str
    link_url: str | None = None


def flatten_payload(value: Any, prefix: str = "") -> dict[str, str]:
    """Flatten nested payload dicts into ``parent_child`` keys usable as ``$placeholders``."""
    flat: dict[str, str] = {}
    if isinstance(value, dict):
        for key, item in value.items():
            name = f"{prefix}_{key}" if prefix else str(key)
            flat.update(flatten_payload(item, name))
    elif isinstance(value, list):
        flat[prefix] = ", ".join(str(item) for item in value)
    elif prefix:
        flat[prefix] = "" if value is None else str(value)
    return flat


def _pick(candidates: list[NotificationTemplate], *, tenant_id: str | None, lang: str) -> NotificationTemplate | None:
    # Candidates arrive sorted by version desc, so the first match is the highest active version.
    for template in candidates:
        if template.tenant_id == tenant_id and template.lang == lang:
            return template
    return None


async def resolve_template(
    session: AsyncSession,
    *,
    event_key: str,
    channel: str,
    tenant_id: str | None,
    lang: str,
) -> NotificationTemplate | None:
    """Tenant+lang, then global+lang, then tenant+default lang, then global+default lang."""
    default_lang = get_settings().notify_default_lang
    langs = [lang] if lang == default_lang else [lang, default_lang]
    candidates = await notif_repo.find_templates(
        session, event_key=event_key, channel=channel, tenant_id=tenant_id, langs=langs
    )
    order: list[tuple[str | None, str]] = []
    for candidate_lang in langs:
        if tenant_id is not None:
            order.append((tenant_id, candidate_lang))
        order.append((None, candidate_lang))
    for scope, candidate_lang in order:
        picked = _pick(candidates, tenant_id=scope, lang=candidate_lang)
        if picked is not None:
            return picked
    return None


def build_context(outbox: NotificationOutbox) -> dict[str, str]:
    payload = outbox.payload_json if isinstance(outbox.payload_json, dict) else {}
    context = flatten_payload(payload.get("data") or {})
    base_url = get_settings().app_base_url.rstrip("/")
    link_url = base_url
    if outbox.entity_type and outbox.entity_id:
        link_url = f"{base_url}/{outbox.entity_type}/{outbox.entity_id}"
    context.update(
        {
            "event_key": outbox.event_key,
            "entity_type": outbox.entity_type or "",
            "entity_id": outbox.entity_id or "",
            "link_url": link_url,
        }
    )
    return context


def render(template: NotificationTemplate | None, context: dict[str, str]) -> RenderedMessage:
    if template is None:
        # No configured template: fall back to a plain event summary.
        subject = context.get("event_key", "")
        body = f"{subject} for {context.get('entity_type', '')} {context.get('entity_id', '')}".strip()
        return RenderedMessage(subject=subject, body=body, link_url=context.get("link_url"))
    subject = Template(template.subject_tpl or "$event_key").safe_substitute(context)
    body = Template(template.body_tpl).safe_substitute(context)
    return RenderedMessage(subject=subject, body=body, link_url=context.get("link_url"))
