"""Salvage a tool call from a malformed provider generation.

Some providers reject their own output when the model emits a tool call in a
text encoding instead of the structured format, returning the raw generation.
The encodings seen in practice are::

    <function=name>{"arg": 1}</function>
    <function=name{"arg": 1}</function>
    <tool_call>{"tool": "name", "input": {"arg": 1}}</tool_call>
    {"name": "name", "arguments": {"arg": 1}}
"""

from __future__ import annotations

import json
import re
import uuid
from typing import Any, Iterable, Optional

from taskloop.core.models import ToolCall
from taskloop.log import get_logger

logger = get_logger(__name__)

FUNCTION_TAG_PATTERN = re.compile(r"<function=([\w.\-]+)")
TOOL_CALL_PATTERN = re.compile(
    r"<tool_call>\s*(\{.*?\})\s*</tool_call>",
    re.DOTALL,
)

_decoder = json.JSONDecoder()


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def _decode_object_at(text: str, start: int) -> Optional[dict[str, Any]]:
    """Decode the first JSON object at or after *start*."""
    brace = text.find("{", start)
    if brace < 0:
        return None
    try:
        obj, _ = _decoder.raw_decode(text, brace)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def _coerce_arguments(value: Any) -> Optional[dict[str, Any]]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value) if value.strip() else {}
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _from_envelope(obj: dict[str, Any]) -> Optional[tuple[str, dict[str, Any]]]:
    """Read ``{"tool"|"name": ..., "input"|"arguments"|"parameters": ...}``."""
    name = obj.get("tool") or obj.get("name")
    if not isinstance(name, str):
        return None
    raw_args = obj.get("input", obj.get("arguments", obj.get("parameters")))
    arguments = _coerce_arguments(raw_args)
    if arguments is None:
        return None
    return name, arguments


def _candidates(payload: str, tool_name: Optional[str]) -> Iterable[tuple[str, dict[str, Any]]]:
    for match in FUNCTION_TAG_PATTERN.finditer(payload):
        arguments = _decode_object_at(payload, match.end())
        if arguments is not None:
            yield match.group(1), arguments

    for body in TOOL_CALL_PATTERN.findall(payload):
        try:
            obj = json.loads(body)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            parsed = _from_envelope(obj)
            if parsed:
                yield parsed

    obj = _decode_object_at(payload, 0)
    if obj is not None:
        parsed = _from_envelope(obj)
        if parsed:
            yield parsed
        elif tool_name:
            # The provider told us which tool; the payload is just its arguments.
            yield tool_name, obj


def recover_tool_call(
    raw_payload: str,
    known_tools: Iterable[str],
    call_id: Optional[str] = None,
    tool_name: Optional[str] = None,
) -> Optional[ToolCall]:
    """Return the first well-formed call to a registered tool found in *raw_payload*."""
    if not raw_payload or not raw_payload.strip():
        return None
    known = set(known_tools)
    for name, arguments in _candidates(raw_payload, tool_name):
        if name not in known:
            logger.debug("recovery_unknown_tool", tool=name)
            continue
        recovered = ToolCall(id=call_id or new_call_id(), name=name, arguments=arguments)
        logger.info("tool_call_recovered", tool=name, call_id=recovered.id)
        return recovered
    logger.warning("tool_call_unrecoverable", payload_preview=raw_payload[:200])
    return None
