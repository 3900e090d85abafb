"""
WhatsApp interactive message limits and payload builders.

Lengths are counted in UTF-8 bytes, the way the Cloud API enforces them.
The same checks run when a flow is validated and right before a send, so a
flow that passes validation never produces a payload the API rejects for size.
"""
from __future__ import annotations

from typing import Any

from models.schemas import ListSection, ReplyButton

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_BODY = 1024
MAX_HEADER = 60
MAX_FOOTER = 60
MAX_LIST_BUTTON_TEXT = 20
MAX_SECTIONS = 10
MAX_ROWS_PER_SECTION = 10
MAX_TOTAL_ROWS = 100
MAX_SECTION_TITLE = 24
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72


def byte_length(text: str) -> int:
    return len(text.encode("utf-8"))


def button_errors(body: str, buttons: list[ReplyButton], footer: str = "") -> list[str]:
    """Problems that would make a reply-buttons message invalid."""
    errors = []
    if not body.strip():
        errors.append("body text is required")
    elif byte_length(body) > MAX_BODY:
        errors.append(f"body text too long (max {MAX_BODY} bytes)")
    if footer and byte_length(footer) > MAX_FOOTER:
        errors.append(f"footer text too long (max {MAX_FOOTER} bytes)")

    if not buttons:
        errors.append("at least 1 button required")
    elif len(buttons) > MAX_BUTTONS:
        errors.append(f"maximum {MAX_BUTTONS} buttons allowed (got {len(buttons)})")

    for button in buttons:
        if not button.title.strip():
            errors.append(f"button '{button.id}' has no title")
        elif byte_length(button.title) > MAX_BUTTON_TITLE:
            errors.append(
                f"button title too long: '{button.title}' "
                f"({byte_length(button.title)} bytes, max {MAX_BUTTON_TITLE})"
            )

    ids = [b.id for b in buttons]
    if any(not i for i in ids):
        errors.append("every button needs an id")
    if len(set(ids)) != len(ids):
        errors.append("button ids must be unique")
    return errors


def list_errors(
    body: str,
    sections: list[ListSection],
    button_text: str,
    header: str = "",
    footer: str = "",
) -> list[str]:
    """Problems that would make a list message invalid."""
    errors = []
    if not body.strip():
        errors.append("body text is required")
    elif byte_length(body) > MAX_BODY:
        errors.append(f"body text too long (max {MAX_BODY} bytes)")
    if header and byte_length(header) > MAX_HEADER:
        errors.append(f"header text too long (max {MAX_HEADER} bytes)")
    if footer and byte_length(footer) > MAX_FOOTER:
        errors.append(f"footer text too long (max {MAX_FOOTER} bytes)")
    if not button_text.strip():
        errors.append("list button text is required")
    elif byte_length(button_text) > MAX_LIST_BUTTON_TEXT:
        errors.append(f"button text too long (max {MAX_LIST_BUTTON_TEXT} bytes)")

    if not sections:
        errors.append("at least 1 section required")
    elif len(sections) > MAX_SECTIONS:
        errors.append(f"maximum {MAX_SECTIONS} sections allowed (got {len(sections)})")

    total_rows = 0
    ids: list[str] = []
    for section in sections:
        if section.title and byte_length(section.title) > MAX_SECTION_TITLE:
            errors.append(f"section title too long: '{section.title}' (max {MAX_SECTION_TITLE} bytes)")
        if not section.rows:
            errors.append(f"section '{section.title or section.id}' has no rows")
        elif len(section.rows) > MAX_ROWS_PER_SECTION:
            errors.append(
                f"maximum {MAX_ROWS_PER_SECTION} rows per section "
                f"(section '{section.title or section.id}' has {len(section.rows)})"
            )
        total_rows += len(section.rows)
        for row in section.rows:
            ids.append(row.id)
            if not row.title.strip():
                errors.append(f"row '{row.id}' has no title")
            elif byte_length(row.title) > MAX_ROW_TITLE:
                errors.append(
                    f"list row title too long: '{row.title}' "
                    f"({byte_length(row.title)} bytes, max {MAX_ROW_TITLE})"
                )
            if row.description and byte_length(row.description) > MAX_ROW_DESCRIPTION:
                errors.append(
                    f"list row description too long: '{row.description}' "
                    f"({byte_length(row.description)} bytes, max {MAX_ROW_DESCRIPTION})"
                )

    if total_rows > MAX_TOTAL_ROWS:
        errors.append(f"maximum {MAX_TOTAL_ROWS} total rows allowed (got {total_rows})")
    if any(not i for i in ids):
        errors.append("every row needs an id")
    if len(set(ids)) != len(ids):
        errors.append("row ids must be unique across all sections")
    return errors


def text_payload(to: str, text: str) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "text",
        "text": {"preview_url": False, "body": text},
    }


def buttons_payload(to: str, body: str, buttons: list[ReplyButton], footer: str = "") -> dict[str, Any]:
    interactive: dict[str, Any] = {
        "type": "button",
        "body": {"text": body},
        "action": {
            "buttons": [
                {"type": "reply", "reply": {"id": b.id, "title": b.title}}
                for b in buttons
            ],
        },
    }
    if footer:
        interactive["footer"] = {"text": footer}
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "interactive",
        "interactive": interactive,
    }


def list_payload(
    to: str,
    body: str,
    sections: list[ListSection],
    button_text: str,
    header: str = "",
    footer: str = "",
) -> dict[str, Any]:
    wire_sections = []
    for section in sections:
        wire_section: dict[str, Any] = {
            "rows": [
                {"id": r.id, "title": r.title, **({"description": r.description} if r.description else {})}
                for r in section.rows
            ],
        }
        if section.title:
            wire_section["title"] = section.title
        wire_sections.append(wire_section)

    interactive: dict[str, Any] = {
        "type": "list",
        "body": {"text": body},
        "action": {"button": button_text, "sections": wire_sections},
    }
    if header:
        interactive["header"] = {"type": "text", "text": header}
    if footer:
        interactive["footer"] = {"text": footer}
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "interactive",
        "interactive": interactive,
    }
