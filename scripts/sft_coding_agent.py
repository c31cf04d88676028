#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastmcp", "pydantic>=2.5.0", "psutil"]
# ///
"""Coding agent toolbox: files, edits, shell, search and utilities over MCP.

The edit tool is the workhorse. One call, four methods:
    replace          regex substitution, every match in the file
    line-numbers     replace an inclusive 1-based line range
    character-match  splice a 0-based [start, end) character range
    diff             apply a unified diff or <replace> tag patch

Every tool answers with one text block. Failures too:
    Error executing tool <name>: <ErrorType>: <message>

Usage:
    sft_coding_agent.py list [--names]
    sft_coding_agent.py call <tool> [--json '{...}'] [--arg key=value ...]
    echo '{"path": "notes.txt"}' | sft_coding_agent.py call read_file
    sft_coding_agent.py mcp-stdio
"""

import base64
import contextlib
import difflib
import errno
import fnmatch
import hashlib
import html
import json
import os
import platform
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Literal, NamedTuple
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


# =============================================================================
# LOGGING
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        # Tool output is free text; keep one record per line
        msg = msg.replace("\t", " ").replace("\n", " ")
        detail = detail.replace("\t", " ").replace("\n", " ")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n")
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
VERSION = "1.0.0"

EXPOSED = [
    # files
    "read_file",
    "write_file",
    "create_file",
    "edit_file",
    "delete_file",
    "copy_file",
    "move_file",
    "list_directory",
    "create_directory",
    "delete_directory",
    # terminal
    "run_command",
    "run_command_stream",
    "get_environment",
    "get_working_directory",
    "which_command",
    # search
    "search_text",
    "search_files",
    "find_and_replace",
    "search_duplicates",
    # utility
    "delay",
    "get_system_info",
    "generate_uuid",
    "encode_decode",
    "hash_text",
    "format_json",
    "validate_regex",
    "calculate_file_stats",
]

CONFIG = {
    "command_timeout_ms": int(os.environ.get("SFB_CMD_TIMEOUT_MS", "30000")),
    "stream_timeout_ms": int(os.environ.get("SFB_STREAM_TIMEOUT_MS", "60000")),
    "max_output_bytes": 10 * 1024 * 1024,
    "diff_context_lines": 3,
    "atomic_writes": os.environ.get("SFB_ATOMIC_WRITES", "1") != "0",
    "preview_lines": 3,
}

SKIP_SUFFIXES = {
    ".pyc", ".pyo", ".so", ".dll", ".exe", ".bin",
    ".png", ".jpg", ".gif", ".ico", ".zip", ".tar", ".gz",
}

SIZE_BUCKETS = [
    (1024, "tiny (< 1KB)"),
    (10 * 1024, "small (1KB - 10KB)"),
    (100 * 1024, "medium (10KB - 100KB)"),
    (1024 * 1024, "large (100KB - 1MB)"),
    (None, "huge (> 1MB)"),
]

EditMethod = Literal["replace", "diff", "line-numbers", "character-match"]
PatchFormat = Literal["unified", "xml", "tagged"]
CodecMethod = Literal[
    "base64-encode", "base64-decode", "url-encode", "url-decode", "html-encode", "html-decode"
]
HashAlgorithm = Literal["md5", "sha1", "sha256", "sha512"]
EntryType = Literal["file", "directory", "both"]
DuplicateMethod = Literal["content", "name", "size"]


# =============================================================================
# CORE FUNCTIONS
# =============================================================================


# --- Errors ---


class ToolError(Exception):
    """Failure raised by a tool and rendered into the text envelope."""


class InvalidSpec(ToolError):
    """Caller arguments are missing, malformed or contradictory."""


class EditConflict(ToolError):
    """A patch does not apply to the current file content."""


# --- Request models (one per tool, decoded before the handler runs) ---


class _Args(BaseModel):
    # camelCase on the wire (startLine, diffContent, ...); snake_case names accepted too
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class ReadFileArgs(_Args):
    path: str = Field(..., description="Path to the file to read")
    encoding: str = Field("utf8", description="File encoding (default: utf8)")


class WriteFileArgs(_Args):
    path: str = Field(..., description="Path to the file to write")
    content: str = Field(..., description="Content to write to the file")
    encoding: str = Field("utf8", description="File encoding (default: utf8)")
    create_dirs: bool = Field(True, description="Create parent directories if they don't exist")


class CreateFileArgs(_Args):
    path: str = Field(..., description="Path to the new file")
    content: str = Field("", description="Initial content for the file")
    overwrite: bool = Field(False, description="Overwrite if file exists")
    create_dirs: bool = Field(True, description="Create parent directories if they don't exist")


class EditFileArgs(_Args):
    path: str = Field(..., description="Path to the file to edit")
    method: EditMethod = Field(..., description="Editing method to use")
    target: str | None = Field(None, description="Regular expression to replace (replace method)")
    replacement: str | None = Field(None, description="Replacement text")
    start_line: int | None = Field(None, description="Start line number (1-based, line-numbers method)")
    end_line: int | None = Field(None, description="End line number (1-based, inclusive, line-numbers method)")
    start_char: int | None = Field(None, ge=0, description="Start character offset (0-based, character-match method)")
    end_char: int | None = Field(None, ge=0, description="End character offset (exclusive, character-match method)")
    diff_content: str | None = Field(None, description="Patch body (diff method)")
    diff_format: PatchFormat = Field("unified", description="Patch format: unified diff, or xml replace tags")


class DeleteFileArgs(_Args):
    path: str = Field(..., description="Path to the file to delete")


class TransferArgs(_Args):
    source: str = Field(..., description="Source file path")
    destination: str = Field(..., description="Destination file path")
    overwrite: bool = Field(False, description="Overwrite destination if it exists")


class ListDirectoryArgs(_Args):
    path: str = Field(".", description="Directory path to list")
    recursive: bool = Field(False, description="List recursively")
    include_hidden: bool = Field(False, description="Include hidden files/directories")
    pattern: str | None = Field(None, description="Glob pattern to filter results")


class CreateDirectoryArgs(_Args):
    path: str = Field(..., description="Directory path to create")
    recursive: bool = Field(True, description="Create parent directories if they don't exist")


class DeleteDirectoryArgs(_Args):
    path: str = Field(..., description="Directory path to delete")
    recursive: bool = Field(False, description="Delete recursively")


class RunCommandArgs(_Args):
    command: str = Field(..., min_length=1, description="Command to execute")
    working_directory: str = Field(".", description="Working directory for command execution")
    timeout: int | None = Field(None, gt=0, description="Command timeout in milliseconds (default: 30000)")
    shell: bool = Field(True, description="Execute in shell")
    env: dict[str, str] | None = Field(None, description="Environment variables to set")


class RunCommandStreamArgs(_Args):
    command: str = Field(..., min_length=1, description="Command to execute")
    working_directory: str = Field(".", description="Working directory for command execution")
    timeout: int | None = Field(None, gt=0, description="Command timeout in milliseconds (default: 60000)")


class GetEnvironmentArgs(_Args):
    filter: str | None = Field(None, description="Filter environment variables by name pattern (regex)")


class NoArgs(_Args):
    pass


class WhichCommandArgs(_Args):
    command: str = Field(..., min_length=1, description="Command name to locate")


class SearchTextArgs(_Args):
    pattern: str = Field(..., min_length=1, description="Text pattern to search for (regex)")
    directory: str = Field(".", description="Directory to search in")
    file_pattern: str = Field("*", description="File pattern to include (glob)")
    exclude_pattern: str | None = Field(None, description="File pattern to exclude (glob)")
    recursive: bool = Field(True, description="Search recursively")
    case_sensitive: bool = Field(False, description="Case sensitive search")
    whole_word: bool = Field(False, description="Match whole words only")
    max_results: int = Field(100, ge=1, description="Maximum number of results")
    context_lines: int = Field(2, ge=0, description="Number of context lines to show")


class SearchFilesArgs(_Args):
    pattern: str = Field(..., min_length=1, description="File name pattern (glob)")
    directory: str = Field(".", description="Directory to search in")
    recursive: bool = Field(True, description="Search recursively")
    include_hidden: bool = Field(False, description="Include hidden files")
    type: EntryType = Field("both", description="Type of items to search for")
    max_results: int = Field(100, ge=1, description="Maximum number of results")


class FindAndReplaceArgs(_Args):
    find_pattern: str = Field(..., min_length=1, description="Pattern to find (regex)")
    replace_with: str = Field(..., description="Text to replace with")
    directory: str = Field(".", description="Directory to search in")
    file_pattern: str = Field("*", description="File pattern to include (glob)")
    exclude_pattern: str | None = Field(None, description="File pattern to exclude (glob)")
    recursive: bool = Field(True, description="Search recursively")
    case_sensitive: bool = Field(False, description="Case sensitive search")
    dry_run: bool = Field(True, description="Preview changes without applying them")
    max_files: int = Field(50, ge=1, description="Maximum number of files to process")


class SearchDuplicatesArgs(_Args):
    directory: str = Field(".", description="Directory to search in")
    method: DuplicateMethod = Field("content", description="Duplicate detection method")
    recursive: bool = Field(True, description="Search recursively")
    min_size: int = Field(0, ge=0, description="Minimum file size to consider (bytes)")
    file_pattern: str = Field("*", description="File pattern to include (glob)")


class DelayArgs(_Args):
    milliseconds: float | None = Field(None, description="Time to wait in milliseconds")
    seconds: float | None = Field(None, description="Time to wait in seconds (alternative to milliseconds)")


class SystemInfoArgs(_Args):
    detailed: bool = Field(False, description="Include detailed system information")


class GenerateUuidArgs(_Args):
    version: Literal[1, 4] = Field(4, description="UUID version (1 or 4)")
    count: int = Field(1, ge=1, le=100, description="Number of UUIDs to generate")


class EncodeDecodeArgs(_Args):
    text: str = Field(..., description="Text to encode/decode")
    method: CodecMethod = Field(..., description="Encoding/decoding method")


class HashTextArgs(_Args):
    text: str = Field(..., description="Text to hash")
    algorithm: HashAlgorithm = Field("sha256", description="Hash algorithm")
    encoding: Literal["hex", "base64"] = Field("hex", description="Output encoding")


class FormatJsonArgs(_Args):
    json_text: str = Field(..., alias="json", description="JSON string to format")
    indent: int = Field(2, ge=0, description="Indentation spaces")
    sort_keys: bool = Field(False, description="Sort object keys")


class ValidateRegexArgs(_Args):
    pattern: str = Field(..., description="Regular expression pattern")
    test_string: str | None = Field(None, description="String to test against the pattern")
    flags: str = Field("", description="Regex flags (g, i, m, s, u)")


class FileStatsArgs(_Args):
    directory: str = Field(".", description="Directory to analyze")
    recursive: bool = Field(True, description="Include subdirectories")
    file_pattern: str = Field("*", description="File pattern to include")


# --- Path helpers ---


def _normalize_path(path_str: str) -> Path:
    """Normalize a path string to a resolved Path object."""
    if not path_str:
        return Path.cwd()
    return Path(path_str).expanduser().resolve()


def _iso(timestamp: float) -> str:
    """UTC ISO-8601 with milliseconds, e.g. 2024-05-01T12:00:00.000Z."""
    stamp = datetime.fromtimestamp(timestamp, timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def _read_text(path: Path, encoding: str = "utf-8", errors: str = "strict") -> str:
    """Read a file without newline translation, so offsets match the bytes on disk."""
    with open(path, "r", encoding=encoding, errors=errors, newline="") as f:
        return f.read()


def _write_text(path: Path, content: str, encoding: str = "utf-8") -> int:
    """Write full content to path. Returns bytes written.

    Existing files are replaced through a temp file in the same directory
    and an atomic rename, so readers never see a half-written file.
    """
    # edit the file a symlink points at, not the link
    path = Path(path).resolve()
    data = content.encode(encoding)
    if not CONFIG["atomic_writes"] or not path.exists():
        path.write_bytes(data)
        return len(data)

    # rename succeeds on read-only files; report them like a plain write would
    if not os.access(path, os.W_OK):
        raise PermissionError(errno.EACCES, "Permission denied", str(path))

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        shutil.copymode(path, tmp_name)
        os.replace(tmp_name, path)
    except Exception:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
    return len(data)


def _scoped(pattern: str, recursive: bool) -> str:
    """Turn a name pattern into a walk pattern."""
    pattern = pattern or "*"
    if recursive and not pattern.startswith("**"):
        return f"**/{pattern}"
    return pattern


def _glob_entries(
    root: Path,
    pattern: str,
    *,
    include_hidden: bool = False,
    exclude: str | None = None,
) -> list[Path]:
    """Glob under root. Hidden entries (any dot-prefixed part) are skipped unless asked.

    exclude is matched against both the relative path and the bare name.
    """
    if not root.exists():
        raise FileNotFoundError(errno.ENOENT, "No such file or directory", str(root))
    if not root.is_dir():
        raise NotADirectoryError(errno.ENOTDIR, "Not a directory", str(root))
    entries: list[Path] = []
    for entry in root.glob(pattern):
        rel = entry.relative_to(root)
        if not include_hidden and any(part.startswith(".") for part in rel.parts):
            continue
        if exclude and (
            fnmatch.fnmatch(rel.as_posix(), exclude) or fnmatch.fnmatch(entry.name, exclude)
        ):
            continue
        entries.append(entry)
    return sorted(entries)


def _entry_info(entry: Path) -> dict[str, Any]:
    stat = entry.stat() if entry.exists() else entry.lstat()
    is_dir = entry.is_dir()
    return {
        "type": "directory" if is_dir else "file",
        "size": None if is_dir else stat.st_size,
        "modified": _iso(stat.st_mtime),
    }


def _display(base: str, root: Path, entry: Path) -> str:
    """Path as the caller sees it: their directory argument joined with the relative part."""
    return os.path.normpath(os.path.join(base, entry.relative_to(root).as_posix()))


def _compile_pattern(pattern: str, flags: int = 0) -> re.Pattern:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise InvalidSpec(f"Invalid regular expression {pattern!r}: {e}") from e


# =============================================================================
# CHANGE REPORTER
# =============================================================================


def summarize(original: str, modified: str, label: str) -> str:
    """Render a unified diff of original vs modified for display.

    Pure and total. Identical inputs give the header plus "(no changes)".
    A final line without a newline is flagged the way diff(1) does.
    """
    out = [f"Index: {label}\n", "=" * 67 + "\n"]
    if original == modified:
        out += [f"--- {label}\n", f"+++ {label}\n", "(no changes)\n"]
        return "".join(out)

    diff_lines = difflib.unified_diff(
        _split_keepends(original),
        _split_keepends(modified),
        fromfile=label,
        tofile=label,
        n=CONFIG["diff_context_lines"],
    )
    for line in diff_lines:
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n\\ No newline at end of file\n")
    return "".join(out)


def _replace_preview(original: str, modified: str, max_lines: int | None = None) -> str:
    """First few diff body lines, header dropped."""
    max_lines = max_lines or CONFIG["preview_lines"]
    body = summarize(original, modified, "file").split("\n")[4:]
    return "\n".join(body[: max_lines * 2])


# =============================================================================
# PATCH APPLIER
# =============================================================================
_DOLLAR_REF = re.compile(r"\$(\$|&|`|'|\d{1,2}|<[^>]*>)")

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")

_PATCH_TAG = re.compile(
    r'<(?P<tag>replace|delete|insert)\s+(?P<attr>target|before|after)="(?P<value>[^"]*)"\s*'
    r"(?:/>|>(?P<body>.*?)</(?P=tag)>)",
    re.DOTALL,
)


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    # (op, text, has_newline) with op in " ", "-", "+"
    lines: list[tuple[str, str, bool]] = field(default_factory=list)

    @property
    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@"

    @property
    def before(self) -> list[str]:
        return [text for op, text, _ in self.lines if op != "+"]


@dataclass
class FilePatch:
    old_name: str = ""
    new_name: str = ""
    hunks: list[Hunk] = field(default_factory=list)


def _patch_file_name(raw: str) -> str:
    name = raw.split("\t", 1)[0].strip()
    if name.startswith(("a/", "b/")):
        name = name[2:]
    return name


def _parse_hunk(lines: list[str], i: int, header: re.Match) -> tuple[Hunk, int]:
    """Parse one hunk starting at its @@ header. Returns (hunk, next index)."""
    old_count = int(header.group(2)) if header.group(2) is not None else 1
    new_count = int(header.group(4)) if header.group(4) is not None else 1
    hunk = Hunk(int(header.group(1)), old_count, int(header.group(3)), new_count)
    old_seen = new_seen = 0
    i += 1

    while i < len(lines) and (old_seen < old_count or new_seen < new_count):
        line = lines[i]
        if line.startswith("\\"):
            if hunk.lines:
                op, text, _ = hunk.lines[-1]
                hunk.lines[-1] = (op, text, False)
            i += 1
            continue
        # Editors strip the lone space of blank context lines
        op = line[:1] or " "
        if op not in " -+":
            break
        hunk.lines.append((op, line[1:], True))
        if op != "+":
            old_seen += 1
        if op != "-":
            new_seen += 1
        i += 1

    if i < len(lines) and lines[i].startswith("\\") and hunk.lines:
        op, text, _ = hunk.lines[-1]
        hunk.lines[-1] = (op, text, False)
        i += 1

    if old_seen != old_count or new_seen != new_count:
        raise EditConflict(
            f"Malformed hunk {hunk.header}: header promises {old_count} old / {new_count} new "
            f"lines, body has {old_seen} / {new_seen}"
        )
    return hunk, i


def parse_unified_patch(body: str) -> list[FilePatch]:
    """Parse a unified diff into file entries. Text outside headers and hunks is ignored."""
    lines = [line[:-1] if line.endswith("\r") else line for line in body.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    patches: list[FilePatch] = []
    current: FilePatch | None = None
    i = 0

    while i < len(lines):
        line = lines[i]
        if line.startswith(("diff ", "Index: ")):
            current = FilePatch()
            patches.append(current)
        elif line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            if current is None or current.old_name or current.hunks:
                current = FilePatch()
                patches.append(current)
            current.old_name = _patch_file_name(line[4:])
            current.new_name = _patch_file_name(lines[i + 1][4:])
            i += 2
            continue
        elif match := _HUNK_HEADER.match(line):
            if current is None:
                current = FilePatch()
                patches.append(current)
            hunk, i = _parse_hunk(lines, i, match)
            current.hunks.append(hunk)
            continue
        i += 1

    return patches


def _split_keepends(text: str) -> list[str]:
    """Split on LF only, keeping terminators. No empty tail for a trailing newline."""
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _bare(line: str) -> str:
    return line.rstrip("\n").removesuffix("\r")


def _matches_at(lines: list[str], expected: list[str], pos: int) -> bool:
    return all(_bare(lines[pos + k]) == _bare(text) for k, text in enumerate(expected))


def _locate_hunk(lines: list[str], expected: list[str], anchor: int, floor: int) -> int | None:
    """Find where expected lines sit: the declared anchor first, then outward from it.

    Never looks above floor (the end of the previous hunk).
    """
    last = len(lines) - len(expected)
    if last < floor:
        return None
    anchor = min(max(anchor, floor), last)
    for distance in range(max(anchor - floor, last - anchor) + 1):
        for pos in (anchor - distance, anchor + distance) if distance else (anchor,):
            if floor <= pos <= last and _matches_at(lines, expected, pos):
                return pos
    return None


def _apply_unified(original: str, patch: FilePatch) -> str:
    lines = _split_keepends(original)
    result: list[str] = []
    cursor = 0

    for number, hunk in enumerate(patch.hunks, 1):
        # A pure insertion (-N,0) goes after line N
        anchor = hunk.old_start - 1 if hunk.old_count else hunk.old_start
        pos = _locate_hunk(lines, hunk.before, anchor, cursor)
        if pos is None:
            raise EditConflict(
                f"Hunk {number} {hunk.header} does not match the file content near line {hunk.old_start}"
            )
        result.extend(lines[cursor:pos])
        idx = pos
        for op, text, has_newline in hunk.lines:
            if op == " ":
                result.append(lines[idx])
                idx += 1
            elif op == "-":
                idx += 1
            else:
                if result and not result[-1].endswith("\n"):
                    result[-1] += "\n"
                result.append(text + "\n" if has_newline else text)
        cursor = idx

    result.extend(lines[cursor:])
    return "".join(result)


def _apply_tagged(original: str, body: str) -> str:
    """Apply <replace>/<insert>/<delete> tags in document order.

    Each tag sees the content left by the tags before it and rewrites
    every occurrence of its literal anchor.
    """
    tags = list(_PATCH_TAG.finditer(body))
    if not tags:
        raise EditConflict("Tagged patch contains no <replace>, <insert> or <delete> tags")

    content = original
    for number, tag in enumerate(tags, 1):
        kind, attr, anchor, inner = tag["tag"], tag["attr"], tag["value"], tag["body"] or ""
        if not anchor:
            raise EditConflict(f"Tag {number} <{kind}> has an empty {attr}")
        if kind == "insert":
            if attr == "target":
                raise EditConflict(f"Tag {number} <insert> needs before= or after=")
            new = inner + anchor if attr == "before" else anchor + inner
        elif attr != "target":
            raise EditConflict(f"Tag {number} <{kind}> needs a target attribute")
        else:
            new = "" if kind == "delete" else inner
        if anchor not in content:
            raise EditConflict(f'Tag {number} <{kind} {attr}="{anchor}"> not found in content')
        content = content.replace(anchor, new)
    return content


def apply_patch(original: str, body: str, format: str = "unified") -> str:
    """Apply a patch body to original text, all or nothing.

    Raises EditConflict for an empty body, a body without hunks or tags,
    or any hunk/tag that does not match. Only the first file entry of a
    multi-file unified diff is used.
    """
    if not body or not body.strip():
        raise EditConflict("Patch body is empty")
    if format in ("xml", "tagged"):
        return _apply_tagged(original, body)
    if format != "unified":
        raise InvalidSpec(f"Unknown diff format: {format}")

    patches = parse_unified_patch(body)
    if not patches or not patches[0].hunks:
        raise EditConflict("Invalid diff format: no hunks found")
    return _apply_unified(original, patches[0])


# =============================================================================
# EDIT DISPATCHER
# =============================================================================


@dataclass(frozen=True)
class ReplaceEdit:
    target: str
    replacement: str


@dataclass(frozen=True)
class LineRangeEdit:
    start_line: int
    end_line: int | None = None
    replacement: str = ""


@dataclass(frozen=True)
class CharRangeEdit:
    start_char: int
    end_char: int
    replacement: str = ""


@dataclass(frozen=True)
class PatchEdit:
    body: str
    format: str = "unified"


EditSpec = ReplaceEdit | LineRangeEdit | CharRangeEdit | PatchEdit


@dataclass(frozen=True)
class EditResult:
    new_content: str
    change_summary: str


def _expand_replacement(match: re.Match, replacement: str) -> str:
    """Fill $-references in replacement text for one match.

    $& is the match, $1..$99 and $<name> are groups, $` and $' the text before
    and after, $$ a dollar. Everything else, backslashes included, is literal.
    Unknown references stay as written.
    """
    if "$" not in replacement:
        return replacement
    groups = match.re.groups

    def _ref(ref: re.Match) -> str:
        token = ref.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        if token == "`":
            return match.string[: match.start()]
        if token == "'":
            return match.string[match.end() :]
        if token.startswith("<"):
            name = token[1:-1]
            if name in match.re.groupindex:
                return match.group(name) or ""
            return ref.group(0)
        index = int(token)
        if 1 <= index <= groups:
            return match.group(index) or ""
        # $12 with fewer than 12 groups reads as $1 then "2"
        if len(token) == 2 and 1 <= int(token[0]) <= groups:
            return (match.group(int(token[0])) or "") + token[1]
        return ref.group(0)

    return _DOLLAR_REF.sub(_ref, replacement)


def replace_pattern(content: str, target: str, replacement: str) -> str:
    """Replace every match of the target regex with the replacement text.

    Escape the target yourself for literal search. The replacement is text:
    only $-references are expanded.
    """
    rx = _compile_pattern(target)
    return rx.sub(lambda m: _expand_replacement(m, replacement), content)


def replace_lines(content: str, start_line: int, end_line: int | None, replacement: str) -> str:
    """Swap the inclusive 1-based line range for the replacement's lines."""
    lines = content.split("\n")
    start = start_line - 1
    if start < 0 or start >= len(lines):
        raise InvalidSpec(f"Start line {start_line} is out of range (file has {len(lines)} lines)")
    end = end_line - 1 if end_line else start
    if end < start:
        raise InvalidSpec(f"End line {end_line} is before start line {start_line}")
    lines[start : end + 1] = replacement.split("\n")
    return "\n".join(lines)


def splice_chars(content: str, start_char: int, end_char: int, replacement: str) -> str:
    # offsets past the end clamp like any slice
    return content[:start_char] + replacement + content[end_char:]


def transform(content: str, spec: EditSpec) -> str:
    """Run the strategy for spec against content. Pure."""
    if isinstance(spec, ReplaceEdit):
        return replace_pattern(content, spec.target, spec.replacement)
    if isinstance(spec, LineRangeEdit):
        return replace_lines(content, spec.start_line, spec.end_line, spec.replacement)
    if isinstance(spec, CharRangeEdit):
        return splice_chars(content, spec.start_char, spec.end_char, spec.replacement)
    if isinstance(spec, PatchEdit):
        return apply_patch(content, spec.body, spec.format)
    raise InvalidSpec(f"Unsupported edit spec: {type(spec).__name__}")


def build_edit_spec(
    method: str,
    target: str | None = None,
    replacement: str | None = None,
    start_line: int | None = None,
    end_line: int | None = None,
    start_char: int | None = None,
    end_char: int | None = None,
    diff_content: str | None = None,
    diff_format: str = "unified",
) -> EditSpec:
    """Pick the variant for method and check its required fields. No I/O."""
    if method == "replace":
        if not target or replacement is None:
            raise InvalidSpec("Replace method requires target and replacement")
        return ReplaceEdit(target, replacement)
    if method == "line-numbers":
        if start_line is None:
            raise InvalidSpec("Line-numbers method requires start_line")
        return LineRangeEdit(start_line, end_line, replacement or "")
    if method == "character-match":
        if start_char is None or end_char is None:
            raise InvalidSpec("Character-match method requires start_char and end_char")
        return CharRangeEdit(start_char, end_char, replacement or "")
    if method == "diff":
        if diff_content is None:
            raise InvalidSpec("Diff method requires diff_content")
        return PatchEdit(diff_content, diff_format or "unified")
    raise InvalidSpec(f"Unknown edit method: {method}")


def apply_edit(path: str | Path, spec: EditSpec) -> EditResult:
    """Read path, transform it per spec, write it back, and describe the change.

    The new content is complete in memory before anything is written, so a
    failing strategy leaves the file untouched.
    """
    file_path = Path(path)
    original = _read_text(file_path)
    new_content = transform(original, spec)
    _write_text(file_path, new_content)
    return EditResult(new_content, summarize(original, new_content, str(path)))


# =============================================================================
# FILE OPERATIONS
# =============================================================================


def _read_file_impl(path: str, encoding: str = "utf8") -> str:
    file_path = _normalize_path(path)
    content = _read_text(file_path, encoding)
    stat = file_path.stat()
    return f"File: {path}\nSize: {stat.st_size} bytes\nModified: {_iso(stat.st_mtime)}\n\n{content}"


def _write_file_impl(path: str, content: str, encoding: str = "utf8", create_dirs: bool = True) -> str:
    file_path = _normalize_path(path)
    if create_dirs:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    _write_text(file_path, content, encoding)
    return f"Successfully wrote {file_path.stat().st_size} bytes to {path}"


def _create_file_impl(path: str, content: str = "", overwrite: bool = False, create_dirs: bool = True) -> str:
    if _normalize_path(path).exists() and not overwrite:
        raise FileExistsError(errno.EEXIST, "File already exists and overwrite is false", path)
    return _write_file_impl(path, content, "utf8", create_dirs)


def _edit_file_impl(
    path: str,
    method: str,
    target: str | None = None,
    replacement: str | None = None,
    start_line: int | None = None,
    end_line: int | None = None,
    start_char: int | None = None,
    end_char: int | None = None,
    diff_content: str | None = None,
    diff_format: str = "unified",
) -> str:
    """Edit a file in place and report the diff.

    CLI: call edit_file
    MCP: edit_file
    """
    start_ms = time.time() * 1000
    spec = build_edit_spec(
        method, target, replacement, start_line, end_line, start_char, end_char, diff_content, diff_format
    )
    result = apply_edit(Path(path).expanduser(), spec)
    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log(
        "INFO",
        "edit",
        f"{path} method={method}",
        metrics=f"latency_ms={latency_ms} chars={len(result.new_content)}",
    )
    return f"Successfully edited {path}\n\nChanges made:\n{result.change_summary}"


def _delete_file_impl(path: str) -> str:
    _normalize_path(path).unlink()
    return f"Successfully deleted file {path}"


def _check_destination(destination: Path, display: str, overwrite: bool) -> None:
    if destination.exists() and not overwrite:
        raise FileExistsError(errno.EEXIST, "Destination already exists and overwrite is false", display)
    destination.parent.mkdir(parents=True, exist_ok=True)


def _copy_file_impl(source: str, destination: str, overwrite: bool = False) -> str:
    dest = _normalize_path(destination)
    _check_destination(dest, destination, overwrite)
    shutil.copy2(_normalize_path(source), dest)
    return f"Successfully copied {source} to {destination}"


def _move_file_impl(source: str, destination: str, overwrite: bool = False) -> str:
    src = _normalize_path(source)
    if not src.exists():
        raise FileNotFoundError(errno.ENOENT, "No such file or directory", source)
    dest = _normalize_path(destination)
    _check_destination(dest, destination, overwrite)
    shutil.move(src, dest)
    return f"Successfully moved {source} to {destination}"


def _list_directory_impl(
    path: str = ".",
    recursive: bool = False,
    include_hidden: bool = False,
    pattern: str | None = None,
) -> str:
    """List a directory as JSON. An explicit pattern replaces the default walk."""
    root = _normalize_path(path)
    glob_pattern = pattern or ("**/*" if recursive else "*")
    listing = []
    for entry in _glob_entries(root, glob_pattern, include_hidden=include_hidden):
        info = _entry_info(entry)
        name = entry.relative_to(root).as_posix()
        if info["type"] == "directory":
            name += "/"
        listing.append({"name": name, **info})
    return f"Directory listing for {path}:\n\n{json.dumps(listing, indent=2)}"


def _create_directory_impl(path: str, recursive: bool = True) -> str:
    _normalize_path(path).mkdir(parents=recursive, exist_ok=recursive)
    return f"Successfully created directory {path}"


def _delete_directory_impl(path: str, recursive: bool = False) -> str:
    dir_path = _normalize_path(path)
    if recursive:
        if dir_path.exists():
            shutil.rmtree(dir_path)
    else:
        dir_path.rmdir()
    return f"Successfully deleted directory {path}"


# =============================================================================
# TERMINAL OPERATIONS
# =============================================================================


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    command: str
    working_directory: str
    duration_ms: int
    timed_out: bool = False


def _kill_tree(proc: subprocess.Popen) -> None:
    """Kill the child and everything it spawned (own session on POSIX)."""
    if os.name == "posix":
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
    else:
        proc.kill()


def _pump(pipe, sink: list[bytes], label: str, log_lines: bool) -> None:
    size = 0
    limit = CONFIG["max_output_bytes"]
    for raw in iter(pipe.readline, b""):
        if size < limit:
            sink.append(raw[: limit - size])
        size += len(raw)
        if log_lines:
            _log("DEBUG", "stream", f"{label}: {raw.decode('utf-8', errors='replace').rstrip()}")
    pipe.close()


def _run_process(
    command: str,
    working_directory: str,
    timeout_ms: int,
    *,
    shell: bool = True,
    env: dict[str, str] | None = None,
    stream: bool = False,
) -> CommandResult:
    """Run a command, capturing output. Never raises for command failures.

    On timeout the process group is killed and whatever was captured so far
    is returned with timed_out set.
    """
    start_ms = time.time() * 1000
    cwd = Path(working_directory or ".").expanduser().resolve()

    def _elapsed() -> int:
        return round(time.time() * 1000 - start_ms)

    try:
        proc = subprocess.Popen(
            command if shell else shlex.split(command),
            cwd=cwd,
            shell=shell,
            env={**os.environ, **env} if env else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
    except (OSError, ValueError) as e:
        return CommandResult("", str(e), 1, command, str(cwd), _elapsed())

    out: list[bytes] = []
    err: list[bytes] = []
    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, out, "stdout", stream), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, err, "stderr", stream), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout_ms / 1000)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_tree(proc)
        proc.wait()
        _log("WARN", "timeout", f"{timeout_ms}ms, cmd={command[:80]}")
    for reader in readers:
        # a detached grandchild can hold the pipe open; don't wait on it forever
        reader.join(timeout=5)

    stdout = b"".join(out).decode("utf-8", errors="replace")
    stderr = b"".join(err).decode("utf-8", errors="replace")
    if timed_out:
        stderr += f"\nCommand timed out after {timeout_ms}ms and was terminated"
    return CommandResult(stdout, stderr, proc.returncode, command, str(cwd), _elapsed(), timed_out)


def _format_command_result(result: CommandResult, streamed: bool = False) -> str:
    lines = [
        f"{'[STREAMED] ' if streamed else ''}Command: {result.command}",
        f"Working Directory: {result.working_directory}",
        f"Exit Code: {result.exit_code}",
        f"Duration: {result.duration_ms}ms",
    ]
    if result.timed_out:
        lines.append("Timed Out: yes")
    output = "\n".join(lines) + "\n\n"
    if result.stdout:
        output += f"--- STDOUT ---\n{result.stdout}\n"
    if result.stderr:
        output += f"--- STDERR ---\n{result.stderr}\n"
    if not result.stdout and not result.stderr:
        output += "(No output)\n"
    return output


def _run_command_impl(
    command: str,
    working_directory: str = ".",
    timeout: int | None = None,
    shell: bool = True,
    env: dict[str, str] | None = None,
) -> str:
    result = _run_process(
        command, working_directory, timeout or CONFIG["command_timeout_ms"], shell=shell, env=env
    )
    _log(
        "INFO",
        "run",
        command[:80],
        metrics=f"latency_ms={result.duration_ms} exit={result.exit_code}",
    )
    return _format_command_result(result)


def _run_command_stream_impl(command: str, working_directory: str = ".", timeout: int | None = None) -> str:
    result = _run_process(
        command, working_directory, timeout or CONFIG["stream_timeout_ms"], stream=True
    )
    _log(
        "INFO",
        "run_stream",
        command[:80],
        metrics=f"latency_ms={result.duration_ms} exit={result.exit_code}",
    )
    return _format_command_result(result, streamed=True)


def _get_environment_impl(filter: str | None = None) -> str:
    rx = _compile_pattern(filter, re.IGNORECASE) if filter else None
    env = {key: value for key, value in sorted(os.environ.items()) if rx is None or rx.search(key)}
    return f"Environment Variables:\n\n{json.dumps(env, indent=2)}"


def _get_working_directory_impl() -> str:
    return f"Current Working Directory: {os.getcwd()}"


def _which_command_impl(command: str) -> str:
    found = shutil.which(command)
    if not found:
        return f"Command '{command}' not found"
    return f"Command '{command}' found at:\n{found}"


# =============================================================================
# SEARCH OPERATIONS
# =============================================================================


class SearchHit(NamedTuple):
    file: str
    line: int
    column: int
    match: str
    context: str


def _text_files(root: Path, file_pattern: str, recursive: bool, exclude: str | None) -> list[Path]:
    return [
        entry
        for entry in _glob_entries(root, _scoped(file_pattern, recursive), exclude=exclude)
        if entry.is_file() and entry.suffix.lower() not in SKIP_SUFFIXES
    ]


def _format_hits(hits: list[SearchHit]) -> str:
    blocks = []
    for hit in hits:
        context = "\n".join(f"    {line}" for line in hit.context.split("\n"))
        blocks.append(f'{hit.file}:{hit.line}:{hit.column}\n  Match: "{hit.match}"\n  Context:\n{context}\n')
    return "\n".join(blocks)


def _search_text_impl(
    pattern: str,
    directory: str = ".",
    file_pattern: str = "*",
    exclude_pattern: str | None = None,
    recursive: bool = True,
    case_sensitive: bool = False,
    whole_word: bool = False,
    max_results: int = 100,
    context_lines: int = 2,
) -> str:
    """Regex search across files with surrounding context.

    CLI: call search_text
    MCP: search_text
    """
    start_ms = time.time() * 1000
    root = _normalize_path(directory)
    rx = _compile_pattern(
        rf"\b(?:{pattern})\b" if whole_word else pattern,
        0 if case_sensitive else re.IGNORECASE,
    )
    files = _text_files(root, file_pattern, recursive, exclude_pattern)

    hits: list[SearchHit] = []
    for file_path in files:
        if len(hits) >= max_results:
            break
        try:
            lines = _read_text(file_path, errors="replace").split("\n")
        except OSError:
            continue
        shown = _display(directory, root, file_path)
        for i, line in enumerate(lines):
            for m in rx.finditer(line):
                if len(hits) >= max_results:
                    break
                lo, hi = max(0, i - context_lines), min(len(lines), i + context_lines + 1)
                hits.append(SearchHit(shown, i + 1, m.start() + 1, m.group(0), "\n".join(lines[lo:hi])))
            if len(hits) >= max_results:
                break

    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log("INFO", "search_text", pattern, metrics=f"latency_ms={latency_ms} matches={len(hits)} files={len(files)}")
    return (
        f'Text search results for "{pattern}":\n\n'
        f"Found {len(hits)} matches in {len(files)} files\n\n{_format_hits(hits)}"
    )


def _search_files_impl(
    pattern: str,
    directory: str = ".",
    recursive: bool = True,
    include_hidden: bool = False,
    type: str = "both",
    max_results: int = 100,
) -> str:
    root = _normalize_path(directory)
    entries = _glob_entries(root, _scoped(pattern, recursive), include_hidden=include_hidden)
    if type == "file":
        entries = [entry for entry in entries if entry.is_file()]
    elif type == "directory":
        entries = [entry for entry in entries if entry.is_dir()]

    results = []
    for entry in entries[:max_results]:
        info = _entry_info(entry)
        if info["size"] is None:
            del info["size"]
        results.append({"path": _display(directory, root, entry), **info})
    return f'File search results for "{pattern}":\n\nFound {len(results)} items\n\n{json.dumps(results, indent=2)}'


def _find_and_replace_impl(
    find_pattern: str,
    replace_with: str,
    directory: str = ".",
    file_pattern: str = "*",
    exclude_pattern: str | None = None,
    recursive: bool = True,
    case_sensitive: bool = False,
    dry_run: bool = True,
    max_files: int = 50,
) -> str:
    """Regex replace across files. Dry runs (the default) only preview.

    CLI: call find_and_replace
    MCP: find_and_replace
    """
    start_ms = time.time() * 1000
    root = _normalize_path(directory)
    rx = _compile_pattern(find_pattern, 0 if case_sensitive else re.IGNORECASE)
    files = _text_files(root, file_pattern, recursive, exclude_pattern)[:max_files]

    results: list[dict[str, Any]] = []
    for file_path in files:
        try:
            content = _read_text(file_path)
        except (OSError, UnicodeDecodeError):
            continue
        new_content, count = rx.subn(lambda m: _expand_replacement(m, replace_with), content)
        if not count:
            continue
        entry: dict[str, Any] = {"file": _display(directory, root, file_path), "matches": count}
        if dry_run:
            entry["preview"] = _replace_preview(content, new_content)
        else:
            _write_text(file_path, new_content)
        results.append(entry)

    action = "Would replace" if dry_run else "Replaced"
    total = sum(entry["matches"] for entry in results)
    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log(
        "INFO",
        "find_and_replace",
        f"{find_pattern} dry_run={dry_run}",
        metrics=f"latency_ms={latency_ms} files={len(results)} matches={total}",
    )
    return (
        f"Find and Replace Results:\n\n{action} {total} occurrences in {len(results)} files\n\n"
        f"{json.dumps(results, indent=2)}"
    )


def _search_duplicates_impl(
    directory: str = ".",
    method: str = "content",
    recursive: bool = True,
    min_size: int = 0,
    file_pattern: str = "*",
) -> str:
    root = _normalize_path(directory)
    groups: dict[str, list[str]] = {}
    for file_path in _glob_entries(root, _scoped(file_pattern, recursive)):
        if not file_path.is_file():
            continue
        size = file_path.stat().st_size
        if size < min_size:
            continue
        if method == "content":
            try:
                with open(file_path, "rb") as f:
                    key = hashlib.file_digest(f, "md5").hexdigest()
            except OSError:
                continue
        elif method == "name":
            key = file_path.name
        else:
            key = str(size)
        groups.setdefault(key, []).append(_display(directory, root, file_path))

    duplicates = {key: paths for key, paths in groups.items() if len(paths) > 1}
    return (
        f"Duplicate search results (method: {method}):\n\n"
        f"Found {len(duplicates)} duplicate groups\n\n{json.dumps(duplicates, indent=2)}"
    )


# =============================================================================
# UTILITY OPERATIONS
# =============================================================================
_HTML_ESCAPES = [("&", "&amp;"), ("<", "&lt;"), (">", "&gt;"), ('"', "&quot;"), ("'", "&#39;")]

_REGEX_FLAGS = {"g": 0, "i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "u": 0}


def _html_encode(text: str) -> str:
    for char, entity in _HTML_ESCAPES:
        text = text.replace(char, entity)
    return text


_CODECS: dict[str, Callable[[str], str]] = {
    "base64-encode": lambda text: base64.b64encode(text.encode("utf-8")).decode("ascii"),
    "base64-decode": lambda text: base64.b64decode(text).decode("utf-8", errors="replace"),
    # same unreserved set as encodeURIComponent
    "url-encode": lambda text: quote(text, safe="!~*'()"),
    "url-decode": lambda text: unquote(text, errors="strict"),
    "html-encode": _html_encode,
    "html-decode": html.unescape,
}


def _delay_impl(milliseconds: float | None = None, seconds: float | None = None) -> str:
    delay_ms = milliseconds or (seconds * 1000 if seconds else 0)
    assert delay_ms > 0, "Delay time must be greater than 0"
    started = time.monotonic()
    time.sleep(delay_ms / 1000)
    actual_ms = round((time.monotonic() - started) * 1000)
    return f"Delayed for {actual_ms}ms (requested: {delay_ms:.0f}ms)"


def _get_system_info_impl(detailed: bool = False) -> str:
    import psutil

    proc = psutil.Process()
    memory = proc.memory_info()
    info: dict[str, Any] = {
        "platform": sys.platform,
        "architecture": platform.machine(),
        "python_version": platform.python_version(),
        "pid": proc.pid,
        "uptime": round(time.time() - proc.create_time(), 3),
        "memory_usage": {"rss": memory.rss, "vms": memory.vms},
        "cpu_times": proc.cpu_times()._asdict(),
    }
    if not detailed:
        return f"System Information:\n\n{json.dumps(info, indent=2)}"

    virtual = psutil.virtual_memory()
    info.update(
        {
            "hostname": platform.node(),
            "os_type": platform.system(),
            "os_release": platform.release(),
            "os_version": platform.version(),
            "total_memory": virtual.total,
            "free_memory": virtual.available,
            "cpu_count": psutil.cpu_count(),
            "boot_time": _iso(psutil.boot_time()),
            "load_average": list(psutil.getloadavg()),
            "network_interfaces": sorted(psutil.net_if_addrs()),
            "user": proc.username(),
        }
    )
    return f"System Information (Detailed):\n\n{json.dumps(info, indent=2)}"


def _generate_uuid_impl(version: int = 4, count: int = 1) -> str:
    make = uuid.uuid4 if version == 4 else uuid.uuid1
    ids = [str(make()) for _ in range(count)]
    if count == 1:
        return ids[0]
    return f"Generated {count} UUIDs:\n" + "\n".join(ids)


def _encode_decode_impl(text: str, method: str) -> str:
    return f"{method} result:\n{_CODECS[method](text)}"


def _hash_text_impl(text: str, algorithm: str = "sha256", encoding: str = "hex") -> str:
    digest = hashlib.new(algorithm, text.encode("utf-8"))
    value = digest.hexdigest() if encoding == "hex" else base64.b64encode(digest.digest()).decode("ascii")
    return f"{algorithm.upper()} hash ({encoding}):\n{value}"


def _format_json_impl(json_text: str, indent: int = 2, sort_keys: bool = False) -> str:
    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as e:
        return f"Invalid JSON: {e}"
    return f"Formatted JSON:\n{json.dumps(parsed, indent=indent, sort_keys=sort_keys, ensure_ascii=False)}"


def _validate_regex_impl(pattern: str, test_string: str | None = None, flags: str = "") -> str:
    unknown = sorted(set(flags) - set(_REGEX_FLAGS))
    if unknown:
        return f"Invalid regular expression: unsupported flag(s) {''.join(unknown)}"
    compiled = 0
    for flag in flags:
        compiled |= _REGEX_FLAGS[flag]
    try:
        rx = re.compile(pattern, compiled)
    except re.error as e:
        return f"Invalid regular expression: {e}"

    out = [f"Regular expression is valid: /{pattern}/{flags}"]
    if test_string:
        matches = list(rx.finditer(test_string))
        out += ["", f'Test string: "{test_string}"', f"Matches: {'Yes' if matches else 'No'}"]
        if matches:
            out.append("All matches:")
            out += [f'  {n}: "{m.group(0)}" at position {m.start()}' for n, m in enumerate(matches, 1)]
    return "\n".join(out) + "\n"


def _size_bucket(size: int) -> str:
    for limit, label in SIZE_BUCKETS:
        if limit is None or size < limit:
            return label
    return SIZE_BUCKETS[-1][1]


def _calculate_file_stats_impl(directory: str = ".", recursive: bool = True, file_pattern: str = "*") -> str:
    root = _normalize_path(directory)
    files = [entry for entry in _glob_entries(root, _scoped(file_pattern, recursive)) if entry.is_file()]

    total_size = 0
    extensions: dict[str, int] = {}
    distribution = {label: 0 for _, label in SIZE_BUCKETS}
    for file_path in files:
        size = file_path.stat().st_size
        total_size += size
        ext = file_path.suffix.lower() or "(no extension)"
        extensions[ext] = extensions.get(ext, 0) + 1
        distribution[_size_bucket(size)] += 1

    stats = {
        "directory": directory,
        "total_files": len(files),
        "total_size": total_size,
        "average_size": round(total_size / len(files)) if files else 0,
        "extension_breakdown": extensions,
        "size_distribution": distribution,
    }
    return f"File Statistics:\n\n{json.dumps(stats, indent=2)}"


# =============================================================================
# TOOL REGISTRY + DISPATCH
# =============================================================================


class ToolSpec(NamedTuple):
    group: str
    description: str
    args: type[BaseModel]
    impl: Callable[..., str]


TOOLS: MappingProxyType = MappingProxyType(
    {
        "read_file": ToolSpec("file", "Read the contents of a file", ReadFileArgs, _read_file_impl),
        "write_file": ToolSpec(
            "file", "Write content to a file (overwrites existing content)", WriteFileArgs, _write_file_impl
        ),
        "create_file": ToolSpec("file", "Create a new file with optional content", CreateFileArgs, _create_file_impl),
        "edit_file": ToolSpec(
            "file",
            "Edit a file using various methods (replace, diff, line numbers, character matching)",
            EditFileArgs,
            _edit_file_impl,
        ),
        "delete_file": ToolSpec("file", "Delete a file", DeleteFileArgs, _delete_file_impl),
        "copy_file": ToolSpec("file", "Copy a file to a new location", TransferArgs, _copy_file_impl),
        "move_file": ToolSpec("file", "Move/rename a file", TransferArgs, _move_file_impl),
        "list_directory": ToolSpec(
            "file", "List files and directories in a given path", ListDirectoryArgs, _list_directory_impl
        ),
        "create_directory": ToolSpec("file", "Create a directory", CreateDirectoryArgs, _create_directory_impl),
        "delete_directory": ToolSpec("file", "Delete a directory", DeleteDirectoryArgs, _delete_directory_impl),
        "run_command": ToolSpec(
            "terminal", "Execute a terminal command in a specified directory", RunCommandArgs, _run_command_impl
        ),
        "run_command_stream": ToolSpec(
            "terminal",
            "Execute a command and stream output in real-time",
            RunCommandStreamArgs,
            _run_command_stream_impl,
        ),
        "get_environment": ToolSpec(
            "terminal", "Get current environment variables", GetEnvironmentArgs, _get_environment_impl
        ),
        "get_working_directory": ToolSpec(
            "terminal", "Get the current working directory", NoArgs, _get_working_directory_impl
        ),
        "which_command": ToolSpec(
            "terminal",
            "Find the path of a command (equivalent to which/where)",
            WhichCommandArgs,
            _which_command_impl,
        ),
        "search_text": ToolSpec("search", "Search for text patterns in files", SearchTextArgs, _search_text_impl),
        "search_files": ToolSpec("search", "Search for files by name pattern", SearchFilesArgs, _search_files_impl),
        "find_and_replace": ToolSpec(
            "search", "Find and replace text across multiple files", FindAndReplaceArgs, _find_and_replace_impl
        ),
        "search_duplicates": ToolSpec(
            "search", "Find duplicate files based on content or name", SearchDuplicatesArgs, _search_duplicates_impl
        ),
        "delay": ToolSpec("utility", "Wait for a specified amount of time", DelayArgs, _delay_impl),
        "get_system_info": ToolSpec("utility", "Get system information", SystemInfoArgs, _get_system_info_impl),
        "generate_uuid": ToolSpec("utility", "Generate a UUID", GenerateUuidArgs, _generate_uuid_impl),
        "encode_decode": ToolSpec(
            "utility", "Encode or decode text using various methods", EncodeDecodeArgs, _encode_decode_impl
        ),
        "hash_text": ToolSpec(
            "utility", "Generate hash of text using various algorithms", HashTextArgs, _hash_text_impl
        ),
        "format_json": ToolSpec("utility", "Format and validate JSON", FormatJsonArgs, _format_json_impl),
        "validate_regex": ToolSpec(
            "utility", "Validate and test regular expressions", ValidateRegexArgs, _validate_regex_impl
        ),
        "calculate_file_stats": ToolSpec(
            "utility", "Calculate statistics for files in a directory", FileStatsArgs, _calculate_file_stats_impl
        ),
    }
)


def _decode_args(model: type[BaseModel], arguments: Any) -> BaseModel:
    """Parse the caller's argument map into the tool's request model."""
    try:
        return model.model_validate(arguments)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidSpec(problems) from e


def _describe_error(exc: Exception) -> str:
    if isinstance(exc, AssertionError):
        return str(exc) or "assertion failed"
    return f"{type(exc).__name__}: {exc}"


def _list_tools_impl() -> list[dict[str, Any]]:
    """Catalog of every tool: name, description, JSON schema of its arguments."""
    return [
        {"name": name, "description": spec.description, "inputSchema": spec.args.model_json_schema()}
        for name, spec in TOOLS.items()
    ]


def _handle_impl(name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
    """Dispatch one tool call and wrap the outcome in the text envelope.

    Never raises. Failures come back as "Error executing tool <name>: ..."
    text, with isError set on the envelope for callers that can use it.
    """
    start_ms = time.time() * 1000
    try:
        spec = TOOLS.get(name)
        if spec is None:
            raise InvalidSpec(f"Unknown tool: {name}")
        request = _decode_args(spec.args, arguments if arguments is not None else {})
        text = spec.impl(**request.model_dump())
    except Exception as e:
        latency_ms = round(time.time() * 1000 - start_ms, 2)
        message = _describe_error(e)
        _log("ERROR", name, message, metrics=f"latency_ms={latency_ms}", trace=type(e).__name__)
        return {
            "content": [{"type": "text", "text": f"Error executing tool {name}: {message}"}],
            "isError": True,
        }

    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log("INFO", name, "ok", metrics=f"latency_ms={latency_ms} chars={len(text)}")
    return {"content": [{"type": "text", "text": text}]}


def _call(name: str, **arguments: Any) -> str:
    return _handle_impl(name, arguments)["content"][0]["text"]


# =============================================================================
# CLI INTERFACE
# =============================================================================
def _parse_pairs(pairs: list[str]) -> dict[str, Any]:
    """KEY=VALUE pairs. Objects and arrays are read as JSON; scalars stay strings
    and are coerced by the tool's request model."""
    parsed: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        assert sep and key, f"expected KEY=VALUE, got {pair!r}"
        if value[:1] in ("{", "["):
            value = json.loads(value)
        parsed[key] = value
    return parsed


def main():
    import argparse

    parser = argparse.ArgumentParser(
        description="Coding agent toolbox: files, edits, shell, search and utilities"
    )
    # -V (capital) for version: lowercase -v reserved for future --verbose flag alignment
    parser.add_argument("-V", "--version", action="version", version=VERSION)
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # --- mcp-stdio ---
    subparsers.add_parser("mcp-stdio", help="Run as MCP server")

    # --- list ---
    p_list = subparsers.add_parser("list", help="List tools and their argument schemas")
    p_list.add_argument("-n", "--names", action="store_true", help="Print tool names only")

    # --- call ---
    p_call = subparsers.add_parser("call", help="Call one tool")
    p_call.add_argument("tool", help="Tool name (see: list --names)")
    p_call.add_argument("-j", "--json", dest="json_args", default=None, help="Arguments as a JSON object")
    p_call.add_argument(
        "-a",
        "--arg",
        dest="pairs",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="One argument (repeatable)",
    )

    args = parser.parse_args()

    try:
        if args.command == "mcp-stdio":
            _run_mcp()
        elif args.command == "list":
            if args.names:
                print("\n".join(TOOLS))
            else:
                print(json.dumps(_list_tools_impl(), indent=2))
        elif args.command == "call":
            raw = args.json_args
            if raw is None and not args.pairs and not sys.stdin.isatty():
                raw = sys.stdin.read()
            arguments = json.loads(raw) if raw and raw.strip() else {}
            assert isinstance(arguments, dict), "arguments must be a JSON object"
            arguments.update(_parse_pairs(args.pairs))
            envelope = _handle_impl(args.tool, arguments)
            print(envelope["content"][0]["text"])
            sys.exit(1 if envelope.get("isError") else 0)
        else:
            parser.print_help()
    except AssertionError as e:
        # Contract violation - expected, user-friendly message
        _log("ERROR", "contract_violation", str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        _log("ERROR", "runtime_error", str(e))
        print(f"Unexpected error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================
def _run_mcp():
    from fastmcp import FastMCP

    mcp = FastMCP("coding-agent")

    # --- files ---

    @mcp.tool()
    def read_file(path: str, encoding: str = "utf8") -> str:
        """Read the contents of a file, with a size/mtime header.

        Args:
            path: Path to the file to read
            encoding: File encoding (default: utf8)
        """
        return _call("read_file", path=path, encoding=encoding)

    @mcp.tool()
    def write_file(path: str, content: str, encoding: str = "utf8", create_dirs: bool = True) -> str:
        """Write content to a file (overwrites existing content).

        Args:
            path: Path to the file to write
            content: Content to write to the file
            encoding: File encoding (default: utf8)
            create_dirs: Create parent directories if they don't exist
        """
        return _call("write_file", path=path, content=content, encoding=encoding, create_dirs=create_dirs)

    @mcp.tool()
    def create_file(path: str, content: str = "", overwrite: bool = False, create_dirs: bool = True) -> str:
        """Create a new file. Fails if it exists unless overwrite is set.

        Args:
            path: Path to the new file
            content: Initial content for the file
            overwrite: Overwrite if file exists
            create_dirs: Create parent directories if they don't exist
        """
        return _call("create_file", path=path, content=content, overwrite=overwrite, create_dirs=create_dirs)

    @mcp.tool()
    def edit_file(
        path: str,
        method: EditMethod,
        target: str | None = None,
        replacement: str | None = None,
        start_line: int | None = None,
        end_line: int | None = None,
        start_char: int | None = None,
        end_char: int | None = None,
        diff_content: str | None = None,
        diff_format: PatchFormat = "unified",
    ) -> str:
        """Edit a file and get back a unified diff of the change.

        Methods:
        - replace: target is a regex, every match becomes replacement
        - line-numbers: replace lines start_line..end_line (1-based, inclusive)
        - character-match: replace characters [start_char, end_char)
        - diff: apply diff_content (unified diff, or xml <replace target="..."> tags)

        A patch that does not apply leaves the file untouched.

        Args:
            path: Path to the file to edit
            method: replace, line-numbers, character-match or diff
            target: Regex to replace (replace)
            replacement: Replacement text (replace, line-numbers, character-match)
            start_line: First line to replace, 1-based (line-numbers)
            end_line: Last line to replace, inclusive; defaults to start_line (line-numbers)
            start_char: First character offset, 0-based (character-match)
            end_char: Offset after the last replaced character (character-match)
            diff_content: Patch body (diff)
            diff_format: unified (default) or xml
        """
        return _call(
            "edit_file",
            path=path,
            method=method,
            target=target,
            replacement=replacement,
            start_line=start_line,
            end_line=end_line,
            start_char=start_char,
            end_char=end_char,
            diff_content=diff_content,
            diff_format=diff_format,
        )

    @mcp.tool()
    def delete_file(path: str) -> str:
        """Delete a file.

        Args:
            path: Path to the file to delete
        """
        return _call("delete_file", path=path)

    @mcp.tool()
    def copy_file(source: str, destination: str, overwrite: bool = False) -> str:
        """Copy a file to a new location, creating parent directories.

        Args:
            source: Source file path
            destination: Destination file path
            overwrite: Overwrite destination if it exists
        """
        return _call("copy_file", source=source, destination=destination, overwrite=overwrite)

    @mcp.tool()
    def move_file(source: str, destination: str, overwrite: bool = False) -> str:
        """Move/rename a file.

        Args:
            source: Source file path
            destination: Destination file path
            overwrite: Overwrite destination if it exists
        """
        return _call("move_file", source=source, destination=destination, overwrite=overwrite)

    @mcp.tool()
    def list_directory(
        path: str = ".", recursive: bool = False, include_hidden: bool = False, pattern: str | None = None
    ) -> str:
        """List files and directories as JSON (name, type, size, modified).

        Args:
            path: Directory path to list
            recursive: List recursively
            include_hidden: Include hidden files/directories
            pattern: Glob pattern to filter results (replaces the default walk)
        """
        return _call(
            "list_directory", path=path, recursive=recursive, include_hidden=include_hidden, pattern=pattern
        )

    @mcp.tool()
    def create_directory(path: str, recursive: bool = True) -> str:
        """Create a directory.

        Args:
            path: Directory path to create
            recursive: Create parent directories if they don't exist
        """
        return _call("create_directory", path=path, recursive=recursive)

    @mcp.tool()
    def delete_directory(path: str, recursive: bool = False) -> str:
        """Delete a directory. Without recursive it must be empty.

        Args:
            path: Directory path to delete
            recursive: Delete recursively
        """
        return _call("delete_directory", path=path, recursive=recursive)

    # --- terminal ---

    @mcp.tool()
    def run_command(
        command: str,
        working_directory: str = ".",
        timeout: int | None = None,
        shell: bool = True,
        env: dict[str, str] | None = None,
    ) -> str:
        """Execute a terminal command and return exit code, stdout and stderr.

        On timeout the command is killed and partial output is returned.

        Args:
            command: Command to execute
            working_directory: Working directory for command execution
            timeout: Command timeout in milliseconds (default: 30000)
            shell: Execute in shell
            env: Extra environment variables
        """
        return _call(
            "run_command",
            command=command,
            working_directory=working_directory,
            timeout=timeout,
            shell=shell,
            env=env,
        )

    @mcp.tool()
    def run_command_stream(command: str, working_directory: str = ".", timeout: int | None = None) -> str:
        """Execute a command, reading output incrementally (lines logged as they arrive).

        Args:
            command: Command to execute
            working_directory: Working directory for command execution
            timeout: Command timeout in milliseconds (default: 60000)
        """
        return _call("run_command_stream", command=command, working_directory=working_directory, timeout=timeout)

    @mcp.tool()
    def get_environment(filter: str | None = None) -> str:
        """Get environment variables as JSON.

        Args:
            filter: Case-insensitive regex on variable names
        """
        return _call("get_environment", filter=filter)

    @mcp.tool()
    def get_working_directory() -> str:
        """Get the server's current working directory."""
        return _call("get_working_directory")

    @mcp.tool()
    def which_command(command: str) -> str:
        """Find the path of a command (equivalent to which/where).

        Args:
            command: Command name to locate
        """
        return _call("which_command", command=command)

    # --- search ---

    @mcp.tool()
    def search_text(
        pattern: str,
        directory: str = ".",
        file_pattern: str = "*",
        exclude_pattern: str | None = None,
        recursive: bool = True,
        case_sensitive: bool = False,
        whole_word: bool = False,
        max_results: int = 100,
        context_lines: int = 2,
    ) -> str:
        """Search for a regex in files; reports file:line:column with context.

        Args:
            pattern: Text pattern to search for (regex)
            directory: Directory to search in
            file_pattern: File pattern to include (glob)
            exclude_pattern: File pattern to exclude (glob)
            recursive: Search recursively
            case_sensitive: Case sensitive search
            whole_word: Match whole words only
            max_results: Maximum number of results
            context_lines: Number of context lines to show
        """
        return _call(
            "search_text",
            pattern=pattern,
            directory=directory,
            file_pattern=file_pattern,
            exclude_pattern=exclude_pattern,
            recursive=recursive,
            case_sensitive=case_sensitive,
            whole_word=whole_word,
            max_results=max_results,
            context_lines=context_lines,
        )

    @mcp.tool()
    def search_files(
        pattern: str,
        directory: str = ".",
        recursive: bool = True,
        include_hidden: bool = False,
        type: EntryType = "both",
        max_results: int = 100,
    ) -> str:
        """Search for files and directories by name (glob).

        Args:
            pattern: File name pattern (glob)
            directory: Directory to search in
            recursive: Search recursively
            include_hidden: Include hidden files
            type: file, directory or both
            max_results: Maximum number of results
        """
        return _call(
            "search_files",
            pattern=pattern,
            directory=directory,
            recursive=recursive,
            include_hidden=include_hidden,
            type=type,
            max_results=max_results,
        )

    @mcp.tool()
    def find_and_replace(
        find_pattern: str,
        replace_with: str,
        directory: str = ".",
        file_pattern: str = "*",
        exclude_pattern: str | None = None,
        recursive: bool = True,
        case_sensitive: bool = False,
        dry_run: bool = True,
        max_files: int = 50,
    ) -> str:
        """Find and replace a regex across files. Dry run by default.

        Args:
            find_pattern: Pattern to find (regex)
            replace_with: Text to replace with
            directory: Directory to search in
            file_pattern: File pattern to include (glob)
            exclude_pattern: File pattern to exclude (glob)
            recursive: Search recursively
            case_sensitive: Case sensitive search
            dry_run: Preview changes without applying them
            max_files: Maximum number of files to process
        """
        return _call(
            "find_and_replace",
            find_pattern=find_pattern,
            replace_with=replace_with,
            directory=directory,
            file_pattern=file_pattern,
            exclude_pattern=exclude_pattern,
            recursive=recursive,
            case_sensitive=case_sensitive,
            dry_run=dry_run,
            max_files=max_files,
        )

    @mcp.tool()
    def search_duplicates(
        directory: str = ".",
        method: DuplicateMethod = "content",
        recursive: bool = True,
        min_size: int = 0,
        file_pattern: str = "*",
    ) -> str:
        """Find duplicate files by content hash, name or size.

        Args:
            directory: Directory to search in
            method: content, name or size
            recursive: Search recursively
            min_size: Minimum file size to consider (bytes)
            file_pattern: File pattern to include (glob)
        """
        return _call(
            "search_duplicates",
            directory=directory,
            method=method,
            recursive=recursive,
            min_size=min_size,
            file_pattern=file_pattern,
        )

    # --- utility ---

    @mcp.tool()
    def delay(milliseconds: float | None = None, seconds: float | None = None) -> str:
        """Wait for a specified amount of time.

        Args:
            milliseconds: Time to wait in milliseconds
            seconds: Time to wait in seconds (alternative to milliseconds)
        """
        return _call("delay", milliseconds=milliseconds, seconds=seconds)

    @mcp.tool()
    def get_system_info(detailed: bool = False) -> str:
        """Get platform, Python and process information.

        Args:
            detailed: Include host, OS, memory, CPU and network details
        """
        return _call("get_system_info", detailed=detailed)

    @mcp.tool()
    def generate_uuid(version: Literal[1, 4] = 4, count: int = 1) -> str:
        """Generate one or more UUIDs.

        Args:
            version: UUID version (1 or 4)
            count: Number of UUIDs to generate (1-100)
        """
        return _call("generate_uuid", version=version, count=count)

    @mcp.tool()
    def encode_decode(text: str, method: CodecMethod) -> str:
        """Encode or decode text (base64, url, html).

        Args:
            text: Text to encode/decode
            method: base64-encode, base64-decode, url-encode, url-decode, html-encode, html-decode
        """
        return _call("encode_decode", text=text, method=method)

    @mcp.tool()
    def hash_text(text: str, algorithm: HashAlgorithm = "sha256", encoding: Literal["hex", "base64"] = "hex") -> str:
        """Hash text with md5, sha1, sha256 or sha512.

        Args:
            text: Text to hash
            algorithm: Hash algorithm
            encoding: Output encoding, hex or base64
        """
        return _call("hash_text", text=text, algorithm=algorithm, encoding=encoding)

    @mcp.tool()
    def format_json(json: str, indent: int = 2, sort_keys: bool = False) -> str:
        """Format and validate JSON.

        Args:
            json: JSON string to format
            indent: Indentation spaces
            sort_keys: Sort object keys
        """
        return _call("format_json", json=json, indent=indent, sort_keys=sort_keys)

    @mcp.tool()
    def validate_regex(pattern: str, test_string: str | None = None, flags: str = "") -> str:
        """Validate a regular expression and list its matches in a test string.

        Args:
            pattern: Regular expression pattern
            test_string: String to test against the pattern
            flags: Regex flags (g, i, m, s, u)
        """
        return _call("validate_regex", pattern=pattern, test_string=test_string, flags=flags)

    @mcp.tool()
    def calculate_file_stats(directory: str = ".", recursive: bool = True, file_pattern: str = "*") -> str:
        """Count files, sizes and extensions under a directory.

        Args:
            directory: Directory to analyze
            recursive: Include subdirectories
            file_pattern: File pattern to include
        """
        return _call(
            "calculate_file_stats", directory=directory, recursive=recursive, file_pattern=file_pattern
        )

    print("coding-agent MCP server starting...", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
