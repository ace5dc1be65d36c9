"""Per-subscription payload templates.

A template is any JSON structure. Every ``{{dotted.path}}`` token inside a
string value is replaced by the value found at that path in the canonical
payload body. Unresolvable paths become the empty string.

    >>> render_template({"id": "{{data.entity_id}}"}, {"data": {"entity_id": "42"}})
    {'id': '42'}
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

_MISSING = object()


def resolve_path(source: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts and lists.

    Numeric segments index into lists. Returns the module's missing
    sentinel when any segment cannot be followed.
    """
    value = source
    for key in path.strip().split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            return _MISSING
    return value


def _stringify(value: Any) -> str:
    if value is _MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _render(node: Any, source: dict[str, Any]) -> Any:
    if isinstance(node, str):
        return TOKEN_PATTERN.sub(lambda m: _stringify(resolve_path(source, m.group(1))), node)
    if isinstance(node, list):
        return [_render(item, source) for item in node]
    if isinstance(node, dict):
        return {key: _render(value, source) for key, value in node.items()}
    return node


def render_template(template: Any, source: dict[str, Any]) -> Any:
    """Render a template against a payload body."""
    return _render(template, source)


def apply_payload_template(template: Any | None, body: dict[str, Any]) -> Any:
    """Return the body a subscription should receive.

    Without a template this is a copy of the canonical body; the canonical
    body itself is never handed out for mutation.
    """
    if template is None:
        return copy.deepcopy(body)
    return render_template(template, body)
