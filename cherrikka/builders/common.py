"""Helpers shared by both target builders."""

from cherrikka.ir.models import BackupIR, IRPart
from cherrikka.merge import infer_latest_unix_millis
from cherrikka.utils.common import to_millis

DEFAULT_TITLE = "Imported Conversation"


def reference_millis(ir: BackupIR) -> int:
    """Latest timestamp seen anywhere in the IR; 0 (the epoch) when none.

    Builders use this wherever a record lacks its own time, so output never
    depends on the wall clock.
    """
    best = infer_latest_unix_millis(ir)
    for f in ir.files:
        for value in (f.created_at, f.updated_at):
            ms = to_millis(value)
            if ms is not None and ms > best:
                best = ms
    return best


def flatten_tool_part(part: IRPart) -> str:
    """Human-readable text for a tool call: name, input, first output."""
    lines = [f"[Tool] {part.name.strip() or 'unknown'}"]
    if part.input.strip():
        lines.append(f"Input: {part.input.strip()}")
    if part.output:
        lines.append(f"Output: {part.output[0].content}")
    elif part.content:
        lines.append(f"Output: {part.content}")
    return "\n".join(lines)
