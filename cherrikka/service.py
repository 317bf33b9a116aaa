"""ConversionService: inspect, validate and convert backup archives.

Archives travel as bytes. Each input is unpacked in memory, detected, parsed
into a BackupIR, optionally rehydrated from an embedded sidecar, merged with
the other inputs and handed to one target builder. The output archive always
carries a sidecar (manifest plus the original inputs) so a later conversion
back to the source format can restore settings the IR cannot express.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any

from cherrikka.backup.archive import read_archive, write_archive
from cherrikka.backup.detection import (
    FORMAT_CHERRY,
    FORMAT_RIKKA,
    FORMAT_UNKNOWN,
    BackupFormatError,
    MalformedArchiveError,
    detect_format,
    require_format,
)
from cherrikka.builders.cherry import build_cherry
from cherrikka.builders.rikka import build_rikka
from cherrikka.ir.models import SOURCE_APPS, BackupIR
from cherrikka.mapping.normalize import ensure_normalized_settings
from cherrikka.merge import ParsedSource, infer_latest_unix_millis, merge_sources
from cherrikka.models import ConvertOptions, Manifest, ManifestSource, ProgressEvent
from cherrikka.parsers.cherry import parse_cherry, validate_cherry
from cherrikka.parsers.rikka import parse_rikka, validate_rikka
from cherrikka.schemas import ConfigSummary, ConvertResult, FileSummary, InspectResult, ValidateResult
from cherrikka.utils.common import dedupe_warnings, now_rfc3339, sha256_hex
from cherrikka.utils.json import as_dict, as_list, as_str, go_json_pretty, parse_json_or_none
from cherrikka.utils.redact import redact

logger = logging.getLogger(__name__)

SIDECAR_DIR = "cherrikka/"
MANIFEST_PATH = SIDECAR_DIR + "manifest.json"
PRIMARY_SOURCE_PATH = SIDECAR_DIR + "raw/source.zip"

ProgressCallback = Callable[[ProgressEvent], None]


class ConversionService:
    """Stateless; one instance can serve any number of requests."""

    def __init__(self, progress: ProgressCallback | None = None) -> None:
        self._progress = progress

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def inspect(self, content: bytes) -> InspectResult:
        """Detect and summarize an archive. Unknown formats are not an error."""
        entries = read_archive(content)
        detected = detect_format(entries)
        if detected.format == FORMAT_UNKNOWN:
            return InspectResult(format=FORMAT_UNKNOWN, hints=detected.hints)

        ir = await parse_entries(detected.format, entries)
        return InspectResult(
            format=detected.format,
            hints=detected.hints,
            conversations=len(ir.conversations),
            assistants=len(ir.assistants),
            files=len(ir.files),
            source_app=ir.source_app,
            config_summary=summarize_config(ir),
            file_summary=summarize_files(ir),
        )

    async def validate(self, content: bytes) -> ValidateResult:
        """Structural checks plus a full parse; parse failures become errors."""
        entries = read_archive(content)
        detected = detect_format(entries)
        if detected.format == FORMAT_UNKNOWN:
            return ValidateResult(valid=False, format=FORMAT_UNKNOWN, issues=["unknown backup format"])

        if detected.format == FORMAT_CHERRY:
            errors = validate_cherry(entries)
        else:
            errors = await validate_rikka(entries)
        warnings: list[str] = []

        config_summary = file_summary = None
        try:
            ir = await parse_entries(detected.format, entries)
        except MalformedArchiveError as e:
            errors.append(str(e))
        else:
            warnings.extend(ir.warnings)
            if not ir.conversations:
                errors.append("no conversations found")
            config_summary = summarize_config(ir)
            file_summary = summarize_files(ir)
            if file_summary.missing:
                warnings.append(f"found {file_summary.missing} missing file payload(s)")

        errors = dedupe_warnings(errors)
        warnings = dedupe_warnings(warnings)
        return ValidateResult(
            valid=not errors,
            format=detected.format,
            issues=errors + warnings,
            errors=errors,
            warnings=warnings,
            config_summary=config_summary,
            file_summary=file_summary,
        )

    async def convert(self, options: ConvertOptions) -> ConvertResult:
        """Convert one or more archives into a single target archive.

        Raises BackupFormatError for invalid options, undetectable inputs,
        a declared format that does not match, or malformed archives.
        """
        target, source_format = self._check_options(options)

        # Phase 1: read, detect, parse, rehydrate every input
        sources: list[ParsedSource] = []
        total = len(options.inputs)
        for i, (name, content) in enumerate(options.inputs, start=1):
            self._emit("read", _span(5, 45, i - 1, total), f"reading {name}")
            entries = read_archive(content)
            detected = require_format(entries, source_format, name)
            self._emit("detect", _span(5, 45, i - 1, total) + 2, f"{name}: {detected.format}")

            ir = await parse_entries(detected.format, entries)
            ir.warnings.extend(await rehydrate_from_sidecar(entries, target, ir))
            ir.warnings.extend(ensure_normalized_settings(ir))
            ir.warnings = dedupe_warnings(ir.warnings)
            ir.target_format = target
            ir.detected_hints = list(detected.hints)
            self._emit("parse", _span(5, 45, i, total), f"parsed {name}")

            sources.append(
                ParsedSource(
                    index=i,
                    name=name,
                    format=detected.format,
                    ir=ir,
                    sha256=sha256_hex(content),
                    hints=list(detected.hints),
                    latest_unix=infer_latest_unix_millis(ir),
                    source_bytes=content,
                )
            )

        # Phase 2: merge
        self._emit("merge", 55, f"merging {len(sources)} source(s)")
        merged, report = merge_sources(
            sources, target, options.config_precedence, options.config_source_index
        )
        if options.redact_secrets:
            merged.config = redact(merged.config)
            merged.settings = redact(merged.settings)

        # Phase 3: build
        template_entries = None
        if options.template:
            self._emit("template", 60, "reading template")
            template_entries = read_archive(options.template)
        self._emit("build", 70, f"building {target} backup")
        id_map: dict[str, str] = {}
        if target == FORMAT_CHERRY:
            entries, build_warnings = build_cherry(merged, template_entries, options.redact_secrets, id_map)
        else:
            entries, build_warnings = await build_rikka(merged, template_entries, options.redact_secrets, id_map)

        # Phase 4: sidecar and pack
        self._emit("sidecar", 85, "writing sidecar")
        primary = sources[report.primary_source_index - 1]
        manifest = Manifest(
            source_app=primary.ir.source_app,
            source_format=primary.format,
            source_sha256=primary.sha256,
            target_app=SOURCE_APPS[target],
            target_format=target,
            id_map=id_map,
            redaction=options.redact_secrets,
            created_at=now_rfc3339(),
            sources=[
                ManifestSource(
                    index=src.index,
                    name=src.name,
                    source_app=src.ir.source_app,
                    source_format=src.format,
                    source_sha256=src.sha256,
                    hints=list(src.hints),
                )
                for src in sources
            ],
            warnings=dedupe_warnings(merged.warnings + report.warnings + build_warnings),
        )
        entries.update(sidecar_entries(manifest, sources, primary))

        self._emit("pack", 95, "packing archive")
        archive = write_archive(entries)
        for warning in manifest.warnings:
            logger.warning("convert: %s", warning)
        self._emit("done", 100, f"wrote {len(entries)} entries")
        return ConvertResult(archive=archive, manifest=manifest)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_options(self, options: ConvertOptions) -> tuple[str, str]:
        if not options.inputs:
            raise BackupFormatError("input and output are required")
        target = options.to_format.strip().lower()
        if target not in (FORMAT_CHERRY, FORMAT_RIKKA):
            raise BackupFormatError("--to must be cherry or rikka")
        source_format = options.from_format.strip().lower() or "auto"
        if len(options.inputs) > 1 and source_format != "auto":
            raise BackupFormatError("multi-input convert only supports --from auto")
        return target, source_format

    def _emit(self, stage: str, progress: int, message: str, level: str = "info") -> None:
        logger.info("[%s %d%%] %s", stage, progress, message)
        if self._progress is not None:
            self._progress(ProgressEvent(stage=stage, progress=progress, message=message, level=level))


async def parse_entries(fmt: str, entries: Mapping[str, bytes]) -> BackupIR:
    if fmt == FORMAT_CHERRY:
        return parse_cherry(entries)
    if fmt == FORMAT_RIKKA:
        return await parse_rikka(entries)
    raise BackupFormatError(f"unsupported format: {fmt}")


async def rehydrate_from_sidecar(entries: Mapping[str, bytes], target: str, ir: BackupIR) -> list[str]:
    """Pull target-format settings out of an embedded original, if there is one.

    Never raises: every failure is reported as a ``sidecar-rehydrate:`` warning
    and leaves the IR untouched.
    """
    if MANIFEST_PATH not in entries:
        return []
    manifest = parse_json_or_none(entries[MANIFEST_PATH])
    if not isinstance(manifest, dict):
        return ["sidecar-rehydrate:invalid-manifest"]

    candidates: list[tuple[int, str, str]] = []  # (index, path, format)
    declared = as_str(manifest.get("sourceFormat")).lower()
    if declared == target and PRIMARY_SOURCE_PATH in entries:
        candidates.append((0, PRIMARY_SOURCE_PATH, declared))
    for src in map(as_dict, as_list(manifest.get("sources"))):
        fmt = as_str(src.get("sourceFormat")).lower()
        index = src.get("index")
        if fmt != target or isinstance(index, bool) or not isinstance(index, int):
            continue
        path = f"{SIDECAR_DIR}raw/source-{index}.zip"
        if path in entries:
            candidates.append((index, path, fmt))
    if not candidates:
        return []

    candidates.sort(key=lambda c: c[0])
    _, path, chosen_format = candidates[0]
    warnings = []
    if len(candidates) > 1:
        warnings.append("sidecar-rehydrate:multiple-source-candidates")

    try:
        raw_entries = read_archive(entries[path])
    except MalformedArchiveError:
        return warnings + ["sidecar-rehydrate:extract-source-failed"]
    detected = detect_format(raw_entries).format
    if detected == FORMAT_UNKNOWN:
        return warnings + ["sidecar-rehydrate:source-format-unknown"]
    if detected != target:
        return warnings + ["sidecar-rehydrate:source-format-mismatch"]
    try:
        raw = await parse_entries(detected, raw_entries)
    except MalformedArchiveError:
        return warnings + ["sidecar-rehydrate:parse-source-failed"]

    _apply_rehydration(raw, ir, chosen_format, target)
    return warnings + ["sidecar-rehydrate:applied"]


def _apply_rehydration(raw: BackupIR, ir: BackupIR, source_format: str, target: str) -> None:
    if target == FORMAT_CHERRY:
        keys = ("cherry.settings", "cherry.llm", "cherry.persistSlices", "cherry.persistRawSlices")
    else:
        keys = ("rikka.settings",)
    for key in keys:
        value = as_dict(raw.config.get(key))
        if value:
            ir.config[f"rehydrate.{key}"] = value
    isolated_key = f"interop.{target}.unsupported"
    isolated = as_dict(raw.opaque.get(isolated_key))
    if isolated:
        ir.opaque[isolated_key] = isolated
    ir.opaque["interop.sidecar"] = {
        "rehydrated": True,
        "sourceFormat": source_format,
        "targetFormat": target,
        "depth": 1,
    }
    logger.info("Rehydrated %s settings from sidecar", target)


def sidecar_entries(
    manifest: Manifest, sources: list[ParsedSource], primary: ParsedSource
) -> dict[str, bytes]:
    """Manifest plus every original input, so the conversion can be reversed."""
    out = {
        MANIFEST_PATH: go_json_pretty(manifest.to_wire()).encode("utf-8"),
        PRIMARY_SOURCE_PATH: primary.source_bytes,
    }
    for src in sources:
        out[f"{SIDECAR_DIR}raw/source-{src.index}.zip"] = src.source_bytes
    return out


def summarize_config(ir: BackupIR) -> ConfigSummary:
    if not ir.settings:
        ensure_normalized_settings(ir)
    settings = ir.settings
    return ConfigSummary(
        providers=len(as_list(settings.get("core.providers"))),
        assistants=len(as_list(settings.get("core.assistants"))),
        has_webdav=bool(as_dict(settings.get("sync.webdav"))),
        has_s3=bool(as_dict(settings.get("sync.s3"))),
        isolated_config_items=_count_leaves(as_dict(ir.opaque.get("interop.rikka.unsupported")))
        + _count_leaves(as_dict(ir.opaque.get("interop.cherry.unsupported"))),
        rehydration_available=ir.opaque.get("interop.sidecar.available") is True,
    )


def summarize_files(ir: BackupIR) -> FileSummary:
    return FileSummary(
        total=len(ir.files),
        referenced=len(ir.referenced_file_ids()),
        orphan=sum(1 for f in ir.files if f.orphan),
        missing=sum(1 for f in ir.files if f.missing or f.data is None),
    )


def _count_leaves(value: dict[str, Any]) -> int:
    """Scalars count one each, lists count their length, dicts recurse."""
    total = 0
    for item in value.values():
        if isinstance(item, dict):
            total += _count_leaves(item)
        elif isinstance(item, list):
            total += len(item)
        else:
            total += 1
    return total


def _span(start: int, end: int, done: int, total: int) -> int:
    if total <= 0:
        return start
    return start + (end - start) * done // total
