"""Shared formatting helpers for human-facing sinks (email digests).

Keeps subject and body rendering in one place so single-record messages
and multi-record digests read the same way.
"""

from __future__ import annotations

import json
from string import Template
from typing import Any

from sinkrelay.models.records import EventRecord


def template_context(record: EventRecord) -> dict[str, str]:
    """Build ``$name`` substitutions for a record.

    Top-level keys of a dict payload are exposed directly; ``$payload`` is
    the whole payload as indented JSON, plus ``$execution_id``,
    ``$record_id`` and ``$enqueued_at``.
    """
    context: dict[str, str] = {}
    if isinstance(record.payload, dict):
        for key, value in record.payload.items():
            if isinstance(key, str) and key.isidentifier():
                context[key] = value if isinstance(value, str) else json.dumps(value)
    context.update(
        payload=format_payload(record.payload),
        execution_id=record.execution_id,
        record_id=record.id,
        enqueued_at=record.enqueued_at.isoformat(),
    )
    return context


def format_payload(payload: Any) -> str:
    """Pretty-print a payload for a message body."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)


def render_record(record: EventRecord, template: str | None) -> str:
    """Render one record with *template*, or its pretty payload if none.

    Unknown ``$placeholders`` are left as-is.
    """
    if template is None:
        return format_payload(record.payload)
    return Template(template).safe_substitute(template_context(record))


def render_digest(records: list[EventRecord], template: str | None) -> str:
    """Render several records as numbered sections, in order."""
    sections: list[str] = []
    for index, record in enumerate(records, start=1):
        sections.append(f"[{index}/{len(records)}] {record.enqueued_at.isoformat()}")
        sections.append(render_record(record, template))
        sections.append("")
    return "\n".join(sections).rstrip() + "\n"


def format_subject(subject: str, record_count: int) -> str:
    """Suffix the subject with a count for digests."""
    if record_count <= 1:
        return subject
    return f"{subject} ({record_count} events)"
