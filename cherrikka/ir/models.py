"""Intermediate representation shared by every parser, mapper and builder.

Parsers produce a BackupIR, the normalizer and merge engine mutate it in
place, and exactly one builder consumes it. Nothing here is persisted.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

PART_TYPES = ("text", "reasoning", "tool", "image", "video", "audio", "document")
ROLES = ("user", "assistant", "system")

SOURCE_APPS = {"cherry": "cherry-studio", "rikka": "rikkahub"}


def normalize_role(role: str | None, empty: str = "assistant") -> str:
    """Map any observed role onto user/assistant/system."""
    low = (role or "").strip().lower()
    if not low:
        return empty
    return low if low in ROLES else "assistant"


@dataclass
class IRPart:
    """One tagged piece of a message."""

    type: str  # one of PART_TYPES
    content: str = ""
    name: str = ""
    file_id: str = ""  # weak reference into BackupIR.files
    media_url: str = ""
    mime_type: str = ""
    input: str = ""
    tool_call_id: str = ""
    output: list["IRPart"] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IRMessage:
    id: str
    role: str  # "user" | "assistant" | "system"
    created_at: str = ""
    model_id: str = ""
    parts: list[IRPart] = field(default_factory=list)
    opaque: dict[str, Any] = field(default_factory=dict)

    def ensure_parts(self) -> None:
        """A message never leaves a parser without at least one part."""
        if not self.parts:
            self.parts.append(IRPart(type="text", content=""))


@dataclass
class IRConversation:
    id: str
    assistant_id: str = ""
    title: str = ""
    created_at: str = ""
    updated_at: str = ""
    messages: list[IRMessage] = field(default_factory=list)
    opaque: dict[str, Any] = field(default_factory=dict)


@dataclass
class IRAssistant:
    id: str
    name: str = ""
    prompt: str = ""
    description: str = ""
    model: dict[str, Any] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    opaque: dict[str, Any] = field(default_factory=dict)


@dataclass
class IRFile:
    id: str
    name: str = ""
    ext: str = ""
    mime_type: str = ""
    logical_type: str = "document"
    relative_src: str = ""  # path inside the source container
    size: int = 0
    created_at: str = ""
    updated_at: str = ""
    hash_sha256: str = ""
    missing: bool = False
    orphan: bool = False
    data: bytes | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackupIR:
    """A whole backup, schema-neutral."""

    source_app: str
    source_format: str  # "cherry" | "rikka"
    target_format: str | None = None
    detected_hints: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    assistants: list[IRAssistant] = field(default_factory=list)
    conversations: list[IRConversation] = field(default_factory=list)
    files: list[IRFile] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    opaque: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def file_by_id(self) -> dict[str, IRFile]:
        return {f.id: f for f in self.files}

    def referenced_file_ids(self) -> set[str]:
        refs: set[str] = set()
        for conv in self.conversations:
            for msg in conv.messages:
                for part in msg.parts:
                    if part.file_id.strip():
                        refs.add(part.file_id)
        return refs
