"""Turn cargo ``compiler-message`` events into file-positioned diagnostics.

A compiler message is *simple* when it can be shown as one diagnostic: it has
exactly one span and that span does not come from a macro expansion.  Every
other message is *complex* and is split into one diagnostic per meaningful
span.  All diagnostics split from the same complex message share a ``(N) ``
prefix so a reader can correlate them in a flat problem list.
"""

from __future__ import annotations

from cargo_tasks.task.models import (
    ChildMessage,
    CompilerMessage,
    DiagnosticSeverity,
    FileDiagnostic,
    Span,
    TextRange,
    decode_tool_event,
)

_SEVERITY_BY_LEVEL: dict[str, DiagnosticSeverity] = {
    "warning": DiagnosticSeverity.WARNING,
    "note": DiagnosticSeverity.INFORMATION,
    "help": DiagnosticSeverity.HINT,
}

_INDENT = "  "


class DiagnosticParser:
    """Stateful parser scoped to a single cargo invocation.

    Create a new instance per task: the complex-message counter keeps growing
    for the lifetime of the instance.
    """

    def __init__(self) -> None:
        self._complex_message_index = 0

    @property
    def complex_message_index(self) -> int:
        return self._complex_message_index

    def parse_line(self, line: str) -> list[FileDiagnostic]:
        """Parse one stdout line; raises ``MalformedEventError`` on bad input."""

        event = decode_tool_event(line)
        if event.message is None:
            return []
        return self.parse_compiler_message(event.message)

    def parse_compiler_message(self, message: CompilerMessage) -> list[FileDiagnostic]:
        if not message.spans:
            return []
        if not is_complex_message(message):
            return [self._simple_diagnostic(message)]

        self._complex_message_index += 1
        return self._complex_diagnostics(message, index=self._complex_message_index)

    def _simple_diagnostic(self, message: CompilerMessage) -> FileDiagnostic:
        span = message.spans[0]
        return _make_diagnostic(span, _primary_text(message, span), message.level)

    def _complex_diagnostics(
        self,
        message: CompilerMessage,
        *,
        index: int,
    ) -> list[FileDiagnostic]:
        prefix = f"({index}) "
        diagnostics: list[FileDiagnostic] = []
        for span in message.spans:
            if span.is_primary:
                text = prefix + _primary_text(message, span)
            elif span.label:
                text = prefix + span.label
            else:
                # Unlabeled secondary spans carry nothing a reader could act on.
                continue
            diagnostics.append(_make_diagnostic(span, text, message.level))
        return diagnostics


def is_complex_message(message: CompilerMessage) -> bool:
    """Whether the message needs more than one diagnostic to be shown."""

    if not message.spans:
        raise ValueError("A compiler message must have spans")
    if len(message.spans) > 1:
        return True
    return message.spans[0].expansion is not None


def to_severity(level: str) -> DiagnosticSeverity:
    return _SEVERITY_BY_LEVEL.get(level, DiagnosticSeverity.ERROR)


def to_range(span: Span) -> TextRange:
    """Convert 1-based wire positions into a 0-based range."""

    return TextRange(
        start_line=span.line_start - 1,
        start_column=span.column_start - 1,
        end_line=span.line_end - 1,
        end_column=span.column_end - 1,
    )


def render_children(children: list[ChildMessage], depth: int = 1) -> str:
    """Render nested notes depth-first, two spaces of indentation per level."""

    indentation = _INDENT * depth
    rendered: list[str] = []
    for child in children:
        rendered.append(f"\n{indentation}{child.level}: {child.message}")
        if child.children:
            rendered.append(render_children(child.children, depth + 1))
    return "".join(rendered)


def _primary_text(message: CompilerMessage, span: Span) -> str:
    text = f"{message.code.code}: " if message.code is not None else ""
    text += message.message
    if span.label:
        text += f"\n{span.label}"
    return text + render_children(message.children)


def _make_diagnostic(span: Span, message: str, level: str) -> FileDiagnostic:
    return FileDiagnostic(
        file_path=span.file_name,
        range=to_range(span),
        message=message,
        severity=to_severity(level),
    )
