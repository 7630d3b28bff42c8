from __future__ import annotations

import os
import re
from typing import Any
from urllib.parse import urlparse

from app.models.tables import Contact

_IMAGE = {"jpg", "jpeg", "png", "gif", "webp"}
_VIDEO = {"mp4", "mov", "avi", "mkv", "webm", "3gp"}
_AUDIO = {"mp3", "ogg", "wav", "m4a", "aac", "opus"}

_PLACEHOLDER = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)\}")


def media_kind_for(path: str) -> str:
    name = urlparse(path).path if "://" in path else path
    ext = os.path.splitext(name)[1].lower().lstrip(".")
    if ext in _IMAGE:
        return "image"
    if ext in _VIDEO:
        return "video"
    if ext in _AUDIO:
        return "audio"
    return "document"


def contact_variables(contact: Contact | None, number: str | None = None) -> dict[str, str]:
    name = (contact.name if contact else None) or ""
    first = name.split(" ")[0] if name else ""
    email = (contact.email if contact else None) or ""
    num = number or (contact.number if contact else "") or ""
    out = {
        "name": name,
        "first_name": first,
        "email": email,
        "number": num,
        # legacy pt-BR placeholders used by existing templates
        "nome": name,
        "primeiro_nome": first,
        "numero": num,
    }
    if contact and isinstance(contact.extra, dict):
        for k, v in contact.extra.items():
            out.setdefault(str(k), "" if v is None else str(v))
    return out


def render_body(text: str, variables: dict[str, Any]) -> str:
    """Replace {placeholder} tokens; unknown placeholders are left untouched."""

    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return m.group(0)

    return _PLACEHOLDER.sub(_sub, text or "")


def _is_send_ready(components: list[dict]) -> bool:
    return any("parameters" in (c or {}) for c in components)


def build_template_components(
    definition: list[dict[str, Any]],
    variables: dict[str, dict[str, dict[str, Any]]],
    *,
    context: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """Turn a template definition + variables into Cloud API send components.

    Variables are grouped by component type ("header", "body", "buttons"), each a
    mapping of placeholder key -> {"value": ..., "buttonIndex": n}. Values may use
    {placeholder} tokens resolved from `context`.
    """
    if _is_send_ready(definition):
        return definition
    if not variables:
        return []

    ctx = context or {}
    out: list[dict[str, Any]] = []

    for comp in definition:
        ctype = str(comp.get("type") or "").lower()
        key = "buttons" if ctype in ("button", "buttons") else ctype
        vars_for = variables.get(key) or variables.get(ctype) or {}
        if not vars_for:
            continue

        if key == "buttons":
            buttons = comp.get("buttons") or []
            for btn_index, button in enumerate(buttons):
                params = []
                for item in vars_for.values():
                    if int(item.get("buttonIndex", -1)) != btn_index:
                        continue
                    value = render_body(str(item.get("value") or ""), ctx)
                    if str(button.get("type")).upper() == "COPY_CODE":
                        params.append({"type": "coupon_code", "coupon_code": value})
                    else:
                        params.append({"type": "text", "text": value})
                if params:
                    out.append(
                        {
                            "type": "button",
                            "sub_type": str(button.get("type") or "URL").lower(),
                            "index": str(btn_index),
                            "parameters": params,
                        }
                    )
            continue

        params = []
        is_image_header = ctype == "header" and str(comp.get("format") or "").upper() == "IMAGE"
        for k in sorted(vars_for.keys(), key=_param_order):
            value = render_body(str(vars_for[k].get("value") or ""), ctx)
            if is_image_header:
                params.append({"type": "image", "image": {"link": value}})
            else:
                params.append({"type": "text", "text": value})
        out.append({"type": ctype, "parameters": params})

    return out


def _param_order(k: str) -> tuple[int, str]:
    # positional placeholders "1","2",... keep numeric order; named ones follow
    return (int(k), "") if str(k).isdigit() else (10**6, str(k))
