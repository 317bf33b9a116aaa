"""Multi-source merge.

Every input is parsed on its own, then folded into one BackupIR. Ids from all
sources are re-derived from (source tag, original id, name) so two runs over
the same inputs produce the same merged ids.
"""

import copy
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Any

from cherrikka.backup.detection import BackupFormatError
from cherrikka.ir.models import BackupIR, IRAssistant, IRFile, IRPart
from cherrikka.models import MergedSourceMeta, MergeReport
from cherrikka.utils.common import dedupe_warnings, to_millis
from cherrikka.utils.ids import derive_hex, derive_uuid
from cherrikka.utils.json import as_dict, as_list, clone, go_json, pick_first_string

logger = logging.getLogger(__name__)

PRECEDENCE_MODES = ("latest", "first", "target", "source")


@dataclass
class ParsedSource:
    """One parsed input archive, ready to merge."""

    index: int  # 1-based
    name: str
    format: str
    ir: BackupIR
    sha256: str = ""
    hints: list[str] = field(default_factory=list)
    latest_unix: int = 0
    source_bytes: bytes = b""

    @property
    def tag(self) -> str:
        return f"S{self.index}"


def infer_latest_unix_millis(ir: BackupIR) -> int:
    """Latest activity timestamp in the IR, 0 when nothing is dated."""
    best = 0
    for conv in ir.conversations:
        for value in [conv.updated_at, conv.created_at] + [m.created_at for m in conv.messages]:
            ms = to_millis(value)
            if ms is not None and ms > best:
                best = ms
    return best


def choose_primary_source_index(
    sources: list[ParsedSource], precedence: str, target_format: str, source_index: int = 0
) -> int:
    """0-based index of the source whose config and settings seed the merge."""
    mode = (precedence or "").strip().lower() or "latest"
    if mode == "latest":
        best = 0
        for i, src in enumerate(sources):
            if src.latest_unix > sources[best].latest_unix:
                best = i
        return best
    if mode == "first":
        return 0
    if mode == "target":
        for i, src in enumerate(sources):
            if src.format == target_format:
                return i
        return choose_primary_source_index(sources, "latest", target_format)
    if mode == "source":
        if source_index < 1 or source_index > len(sources):
            raise BackupFormatError(
                f"--config-source-index must be within 1..{len(sources)} when --config-precedence=source"
            )
        return source_index - 1
    raise BackupFormatError("--config-precedence must be latest|first|target|source")


def merge_sources(
    sources: list[ParsedSource],
    target_format: str,
    precedence: str = "latest",
    source_index: int = 0,
) -> tuple[BackupIR, MergeReport]:
    if not sources:
        raise BackupFormatError("no input sources")
    primary = choose_primary_source_index(sources, precedence, target_format, source_index)
    report = MergeReport(
        primary_source_index=primary + 1,
        sources=[
            MergedSourceMeta(
                index=src.index,
                name=src.name,
                source_app=src.ir.source_app,
                format=src.format,
                sha256=src.sha256,
                hints=sorted(h.strip() for h in src.hints if h.strip()),
                latest_unix=src.latest_unix,
            )
            for src in sources
        ],
    )
    if len(sources) == 1:
        return sources[0].ir, report

    return _Merger(sources, primary, target_format).run(report)


class _Merger:
    """Holds the per-call id maps; one instance per merge."""

    def __init__(self, sources: list[ParsedSource], primary: int, target_format: str) -> None:
        self.sources = sources
        self.primary = primary
        self.target_format = target_format.strip().lower()
        self.warnings: list[str] = [f"multi-source-merge:count={len(sources)}"]
        self.assistant_map: dict[int, dict[str, str]] = {}
        self.default_assistant: dict[int, str] = {}
        self.file_map: dict[int, dict[str, str]] = {}

    def run(self, report: MergeReport) -> tuple[BackupIR, MergeReport]:
        base = self.sources[self.primary].ir
        merged = BackupIR(
            source_app=base.source_app,
            source_format=base.source_format,
            target_format=self.target_format,
            config=clone(base.config),
            settings=self._merge_settings(),
        )
        opaque_sources = self._merge_assistants(merged)
        self._merge_files(merged)
        self._merge_conversations(merged)

        merged.settings["core.assistants"] = [_core_assistant(a) for a in merged.assistants]
        selection = as_dict(merged.settings.get("core.selection"))
        primary_default = self.default_assistant.get(self.sources[self.primary].index, "")
        if primary_default:
            selection["assistantId"] = primary_default
        merged.settings["core.selection"] = selection

        merged.opaque["opaque.merge.sources"] = opaque_sources
        merged.warnings = dedupe_warnings(self.warnings)
        report.warnings = dedupe_warnings(self.warnings)
        logger.info(
            "Merged %d sources (primary S%d): %d conversations, %d assistants, %d files",
            len(self.sources), self.primary + 1,
            len(merged.conversations), len(merged.assistants), len(merged.files),
        )
        return merged, report

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _merge_settings(self) -> dict[str, Any]:
        out = clone(self.sources[self.primary].ir.settings)
        for key in ("core.providers", "core.assistants"):
            _append_by_signature(out, key, [])
        for i, src in enumerate(self.sources):
            if i == self.primary:
                continue
            other = src.ir.settings
            for key in ("core.providers", "core.assistants", "raw.unsupported"):
                _append_by_signature(out, key, as_list(other.get(key)))
            for key in ("raw.cherry", "raw.rikka"):
                incoming = as_dict(other.get(key))
                if incoming:
                    target = as_dict(out.get(key))
                    for k, v in incoming.items():
                        target.setdefault(k, clone(v))
                    out[key] = target
        return out

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def _merge_assistants(self, merged: BackupIR) -> dict[str, Any]:
        used_ids: set[str] = set()
        used_names: set[str] = set()
        opaque_sources: dict[str, Any] = {}
        for src in self.sources:
            mapping = self.assistant_map.setdefault(src.index, {})
            for assistant in src.ir.assistants:
                cloned = copy.deepcopy(assistant)
                original_id = assistant.id.strip()
                old_id = original_id or derive_uuid(f"merge:{src.tag}:assistant:missing:{assistant.name}")
                new_id = derive_uuid(f"merge:{src.tag}:assistant:{old_id}:{assistant.name}")
                if new_id in used_ids:
                    new_id = derive_uuid(f"merge:{src.tag}:assistant:{old_id}:{assistant.name}:dup")
                used_ids.add(new_id)
                mapping[old_id] = new_id
                cloned.id = new_id

                name = assistant.name.strip() or "Imported Assistant"
                cloned.name = name
                if name.lower() in used_names:
                    cloned.name = _unique_tagged_name(name, src.tag, used_names)
                    self.warnings.append(f"merge-assistant-renamed:{name}:{cloned.name}")
                else:
                    used_names.add(name.lower())
                merged.assistants.append(cloned)
                self.default_assistant.setdefault(src.index, new_id)

            opaque_sources[src.tag] = {
                "name": src.name,
                "sourceApp": src.ir.source_app,
                "sourceFormat": src.ir.source_format,
                "opaque": clone(src.ir.opaque),
            }
            self.warnings.extend(src.ir.warnings)
        return opaque_sources

    def _merge_files(self, merged: BackupIR) -> None:
        used_paths: set[str] = set()
        for src in self.sources:
            mapping = self.file_map.setdefault(src.index, {})
            for f in src.ir.files:
                cloned = copy.deepcopy(f)
                old_id = f.id.strip() or derive_uuid(f"merge:{src.tag}:file:missing:{f.name}")
                new_id = derive_uuid(f"merge:{src.tag}:file:{old_id}:{f.name}:{f.hash_sha256}")
                mapping[old_id] = new_id
                cloned.id = new_id
                cloned.metadata["merge.source"] = src.tag

                if self.target_format == "rikka":
                    rel = _rikka_rel_path(cloned) or f"upload/{_derived_file_name(new_id, cloned.ext)}"
                    unique = rel
                    if unique in used_paths:
                        unique = f"upload/{_derived_file_name(new_id + '-collision', cloned.ext)}"
                        self.warnings.append(f"merge-file-path-collision:{rel}:{unique}")
                    used_paths.add(unique)
                    cloned.relative_src = unique
                    cloned.metadata["rikka.relative_path"] = unique
                else:
                    stem = _cherry_stem(cloned) or new_id.replace("-", "")
                    unique = stem
                    if unique.lower() in used_paths:
                        unique = derive_hex(f"merge:cherry:{stem}:{new_id}")
                        self.warnings.append(f"merge-file-path-collision:{stem}:{unique}")
                    used_paths.add(unique.lower())
                    cloned.metadata["cherry_id"] = unique
                merged.files.append(cloned)

    def _merge_conversations(self, merged: BackupIR) -> None:
        used_ids: set[str] = set()
        for src in self.sources:
            assistants = self.assistant_map.get(src.index, {})
            files = self.file_map.get(src.index, {})
            for conv in src.ir.conversations:
                cloned = copy.deepcopy(conv)
                old_id = conv.id.strip() or derive_uuid(f"merge:{src.tag}:conversation:missing:{conv.title}")
                new_id = derive_uuid(f"merge:{src.tag}:conversation:{old_id}:{conv.title}")
                if new_id in used_ids:
                    new_id = derive_uuid(f"merge:{src.tag}:conversation:{old_id}:{conv.title}:dup")
                used_ids.add(new_id)
                cloned.id = new_id

                remapped = assistants.get(conv.assistant_id.strip(), "")
                if remapped:
                    cloned.assistant_id = remapped
                else:
                    fallback = self.default_assistant.get(src.index) or (
                        merged.assistants[0].id if merged.assistants else ""
                    )
                    if fallback:
                        cloned.assistant_id = fallback
                        self.warnings.append(f"merge-conversation-rebound:{src.tag}:{old_id}")

                for i, msg in enumerate(cloned.messages):
                    old_msg = msg.id.strip() or derive_uuid(f"merge:{src.tag}:conversation:{old_id}:message:{i}")
                    msg.id = derive_uuid(f"merge:{src.tag}:conversation:{old_id}:message:{old_msg}:{i}")
                    self._remap_parts(msg.parts, files)
                merged.conversations.append(cloned)

    def _remap_parts(self, parts: list[IRPart], files: dict[str, str]) -> None:
        for part in parts:
            original = part.file_id.strip()
            if original:
                if files.get(original):
                    part.file_id = files[original]
                else:
                    self.warnings.append(f"merge-file-reference-missing:{original}")
            if part.output:
                self._remap_parts(part.output, files)


def _append_by_signature(dst: dict[str, Any], key: str, incoming: list[Any]) -> None:
    """Append items whose canonical JSON is not already present."""
    current = as_list(dst.get(key))
    seen = {go_json(item) for item in current}
    for item in incoming:
        sig = go_json(item)
        if sig not in seen:
            seen.add(sig)
            current.append(clone(item))
    dst[key] = current


def _unique_tagged_name(base: str, tag: str, used: set[str]) -> str:
    candidate = f"{base} ({tag})"
    n = 2
    while candidate.lower() in used:
        candidate = f"{base} ({tag}-{n})"
        n += 1
    used.add(candidate.lower())
    return candidate


def _derived_file_name(seed: str, ext: str) -> str:
    ext = (ext or "").strip()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return derive_hex(f"merge:file:{seed}") + ext


def _rikka_rel_path(f: IRFile) -> str:
    for candidate in (pick_first_string(f.metadata.get("rikka.relative_path")), f.relative_src.strip()):
        candidate = candidate.replace("\\", "/")
        if not candidate:
            continue
        if candidate.startswith("upload/"):
            return candidate
        base = posixpath.basename(candidate)
        if base not in ("", ".", "/"):
            return f"upload/{base}"
    name = f.name.strip() or (f.id.strip() + f.ext.strip())
    return f"upload/{posixpath.basename(name)}" if name else ""


def _cherry_stem(f: IRFile) -> str:
    candidate = pick_first_string(f.metadata.get("cherry_id")) or f.id.strip()
    return candidate.replace("-", "").replace(" ", "_").strip("._/")


def _core_assistant(assistant: IRAssistant) -> dict[str, Any]:
    item: dict[str, Any] = {"id": assistant.id, "name": assistant.name, "systemPrompt": assistant.prompt}
    model_id = pick_first_string(
        assistant.model.get("chatModelId"),
        assistant.model.get("modelId"),
        assistant.model.get("id"),
        assistant.model.get("name"),
    )
    if model_id:
        item["chatModelId"] = model_id
    for key, setting in (
        ("temperature", "temperature"),
        ("topP", "topP"),
        ("context", "contextCount"),
        ("stream", "streamOutput"),
        ("maxTokens", "maxTokens"),
    ):
        if setting in assistant.settings:
            item[key] = assistant.settings[setting]
    return item
