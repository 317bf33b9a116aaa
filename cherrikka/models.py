"""Pydantic models that cross the service boundary.

Field names are snake_case in Python and camelCase on the wire, matching the
manifest the counterpart implementation writes and reads.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ManifestSource(_CamelModel):
    index: int
    name: str
    source_app: str
    source_format: str
    source_sha256: str
    hints: list[str] = Field(default_factory=list)


class Manifest(_CamelModel):
    schema_version: int = 1
    source_app: str
    source_format: str
    source_sha256: str
    target_app: str
    target_format: str
    id_map: dict[str, str] = Field(default_factory=dict)
    redaction: bool = False
    created_at: str
    sources: list[ManifestSource] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class MergedSourceMeta(_CamelModel):
    index: int
    name: str
    source_app: str
    format: str
    sha256: str
    hints: list[str] = Field(default_factory=list)
    latest_unix: int = 0


class MergeReport(_CamelModel):
    primary_source_index: int  # 1-based
    sources: list[MergedSourceMeta] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ConvertOptions(BaseModel):
    """One convert request. Inputs are (display name, archive bytes) pairs."""

    inputs: list[tuple[str, bytes]]
    from_format: str = "auto"  # auto|cherry|rikka
    to_format: str  # cherry|rikka
    redact_secrets: bool = False
    template: bytes | None = None
    config_precedence: str = "latest"  # latest|first|target|source
    config_source_index: int = 0  # 1-based, only for "source"


class ProgressEvent(BaseModel):
    stage: str
    progress: int = Field(ge=0, le=100)
    message: str = ""
    level: Literal["info", "warning", "error"] = "info"
