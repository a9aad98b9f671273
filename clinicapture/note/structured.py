from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from ..internal_core.contracts import StructuredEncounterRecord

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _parse_json_object(raw: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    extracted = _extract_first_json_object(raw)
    if not extracted:
        return None
    try:
        data = json.loads(extracted)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _extract_first_json_object(text: str) -> str:
    start = text.find("{")
    if start < 0:
        return ""
    depth = 0
    in_str = False
    escape = False
    for i, ch in enumerate(text[start:], start=start):
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""


def parse_structured_payload(text: str) -> Optional[dict[str, Any]]:
    """JSON object from a fenced block or the raw text, validated as an encounter record.

    Returns None when nothing parses or validation fails; callers keep the text.
    """
    candidates = [m.group(1).strip() for m in _FENCE_RE.finditer(text or "")]
    candidates.append(text or "")
    for candidate in candidates:
        data = _parse_json_object(candidate)
        if data is None:
            continue
        try:
            record = StructuredEncounterRecord.model_validate(data)
        except ValidationError as e:
            logger.info("structured payload rejected errors=%s", e.error_count())
            return None
        return record.model_dump(mode="json", exclude_unset=True)
    logger.info("structured payload not found in model output chars=%s", len(text or ""))
    return None
