"""Pydantic response schemas for inspect, validate and convert."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cherrikka.models import Manifest


class _Response(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True)


class ConfigSummary(_Response):
    providers: int = 0
    assistants: int = 0
    has_webdav: bool = False
    has_s3: bool = False
    isolated_config_items: int = 0
    rehydration_available: bool = False


class FileSummary(_Response):
    total: int = 0
    referenced: int = 0
    orphan: int = 0
    missing: int = 0


class InspectResult(_Response):
    format: str
    hints: list[str] = Field(default_factory=list)
    conversations: int = 0
    assistants: int = 0
    files: int = 0
    source_app: str = ""
    config_summary: ConfigSummary | None = None
    file_summary: FileSummary | None = None


class ValidateResult(_Response):
    valid: bool
    format: str
    issues: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    config_summary: ConfigSummary | None = None
    file_summary: FileSummary | None = None


class ConvertResult(BaseModel):
    """Output archive bytes plus the manifest written into its sidecar."""

    archive: bytes
    manifest: Manifest
