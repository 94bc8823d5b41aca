"""Cargo machine-readable message models and diagnostic output types."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

COMPILER_MESSAGE_REASON = "compiler-message"


class MalformedEventError(ValueError):
    """A JSON-looking stdout line that is not a valid cargo event."""


class DiagnosticSeverity(str, Enum):
    """Severity levels understood by diagnostic consumers."""

    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"
    HINT = "hint"


@dataclass(slots=True, frozen=True)
class TextRange:
    """Zero-based source range."""

    start_line: int
    start_column: int
    end_line: int
    end_column: int


@dataclass(slots=True)
class FileDiagnostic:
    """One diagnostic keyed to the file it was reported for."""

    file_path: str
    range: TextRange
    message: str
    severity: DiagnosticSeverity


@dataclass(slots=True)
class SpanText:
    """Highlighted source line attached to a span."""

    text: str
    highlight_start: int
    highlight_end: int


@dataclass(slots=True)
class SpanExpansion:
    """Macro expansion site a span was generated from."""

    span: Span
    macro_decl_name: str = ""
    def_site_span: Span | None = None


@dataclass(slots=True)
class Span:
    """Source region referenced by a compiler message, positions are 1-based."""

    file_name: str
    byte_start: int
    byte_end: int
    line_start: int
    line_end: int
    column_start: int
    column_end: int
    is_primary: bool
    label: str | None = None
    expansion: SpanExpansion | None = None
    text: list[SpanText] = field(default_factory=list)


@dataclass(slots=True)
class ChildMessage:
    """Nested note/help entry of a compiler message."""

    level: str
    message: str
    children: list[ChildMessage] = field(default_factory=list)


@dataclass(slots=True)
class MessageCode:
    """Short diagnostic identifier such as ``E0384``."""

    code: str
    explanation: str | None = None


@dataclass(slots=True)
class CompilerMessage:
    """Top-level rustc diagnostic carried by a ``compiler-message`` event."""

    level: str
    message: str
    code: MessageCode | None = None
    spans: list[Span] = field(default_factory=list)
    children: list[ChildMessage] = field(default_factory=list)


@dataclass(slots=True)
class ToolEvent:
    """One line of ``--message-format json`` output."""

    reason: str
    message: CompilerMessage | None = None
    package_id: str | None = None


def decode_tool_event(line: str) -> ToolEvent:
    """Decode one JSON line emitted by cargo into a typed event."""

    try:
        raw = json.loads(line)
    except json.JSONDecodeError as error:
        raise MalformedEventError(f"Invalid JSON in cargo output: {error}") from error
    if not isinstance(raw, dict):
        raise MalformedEventError("Cargo event must be a JSON object")

    reason = raw.get("reason")
    if not isinstance(reason, str):
        raise MalformedEventError("Cargo event reason must be a string")
    package_id = raw.get("package_id")
    if package_id is not None and not isinstance(package_id, str):
        raise MalformedEventError("Cargo event package_id must be a string when provided")

    if reason != COMPILER_MESSAGE_REASON:
        return ToolEvent(reason=reason, package_id=package_id)

    return ToolEvent(
        reason=reason,
        message=_decode_compiler_message(raw.get("message")),
        package_id=package_id,
    )


def _decode_compiler_message(raw: Any) -> CompilerMessage:
    if not isinstance(raw, dict):
        raise MalformedEventError("compiler-message event must carry a message object")
    level = _require_str(raw, "level", "message")
    message = _require_str(raw, "message", "message")
    raw_spans = raw.get("spans") or []
    if not isinstance(raw_spans, list):
        raise MalformedEventError("message.spans must be an array")
    return CompilerMessage(
        level=level,
        message=message,
        code=_decode_code(raw.get("code")),
        spans=[_decode_span(item) for item in raw_spans],
        children=_decode_children(raw.get("children")),
    )


def _decode_code(raw: Any) -> MessageCode | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return MessageCode(code=raw)
    if not isinstance(raw, dict):
        raise MalformedEventError("message.code must be an object when provided")
    explanation = raw.get("explanation")
    return MessageCode(
        code=_require_str(raw, "code", "message.code"),
        explanation=explanation if isinstance(explanation, str) else None,
    )


def _decode_children(raw: Any) -> list[ChildMessage]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise MalformedEventError("message.children must be an array")
    children: list[ChildMessage] = []
    for item in raw:
        if not isinstance(item, dict):
            raise MalformedEventError("message.children entry must be an object")
        children.append(
            ChildMessage(
                level=_require_str(item, "level", "child"),
                message=_require_str(item, "message", "child"),
                children=_decode_children(item.get("children")),
            ),
        )
    return children


def _decode_span(raw: Any) -> Span:
    if not isinstance(raw, dict):
        raise MalformedEventError("message.spans entry must be an object")
    label = raw.get("label")
    if label is not None and not isinstance(label, str):
        raise MalformedEventError("span.label must be a string when provided")
    return Span(
        file_name=_require_str(raw, "file_name", "span"),
        byte_start=_optional_int(raw, "byte_start"),
        byte_end=_optional_int(raw, "byte_end"),
        line_start=_require_int(raw, "line_start"),
        line_end=_require_int(raw, "line_end"),
        column_start=_require_int(raw, "column_start"),
        column_end=_require_int(raw, "column_end"),
        is_primary=bool(raw.get("is_primary", False)),
        label=label,
        expansion=_decode_expansion(raw.get("expansion")),
        text=_decode_span_text(raw.get("text")),
    )


def _decode_expansion(raw: Any) -> SpanExpansion | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise MalformedEventError("span.expansion must be an object when provided")
    def_site = raw.get("def_site_span")
    macro_decl_name = raw.get("macro_decl_name")
    return SpanExpansion(
        span=_decode_span(raw.get("span")),
        macro_decl_name=macro_decl_name if isinstance(macro_decl_name, str) else "",
        def_site_span=_decode_span(def_site) if def_site is not None else None,
    )


def _decode_span_text(raw: Any) -> list[SpanText]:
    if not isinstance(raw, list):
        return []
    return [
        SpanText(
            text=str(item.get("text", "")),
            highlight_start=_optional_int(item, "highlight_start"),
            highlight_end=_optional_int(item, "highlight_end"),
        )
        for item in raw
        if isinstance(item, dict)
    ]


def _require_str(raw: dict[str, Any], key: str, owner: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise MalformedEventError(f"{owner}.{key} must be a string")
    return value


def _require_int(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventError(f"span.{key} must be an integer")
    return value


def _optional_int(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventError(f"span.{key} must be an integer when provided")
    return value
