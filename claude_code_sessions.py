"""Claude Code session scanner.

Transcripts live under ``<config dir>/projects/<project id>/*.jsonl``. Each
line is either a ``summary`` record or a message node linked to its parent by
``parentUuid``. Resuming a conversation appends new nodes under an existing
parent, so one file can hold several conversations and one conversation can
span files. Sessions are rebuilt by walking back from every leaf node.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

import config
from records import SOURCE_CLAUDE, SessionRecord
from usage import UsageAccumulator, usage_from_claude
from utils import as_non_empty_str, parse_ts, summarize

PREVIEW_LENGTH = 80
SIGNATURE_LENGTH = 120

CAVEAT_PREFIX = "Caveat:"
COMMAND_MARKERS = ("<command-name>", "<command-message>")
LOCAL_COMMAND_MARKERS = ("<local-command-stdout>", "<local-command-stderr>")
INTERRUPTED_PREFIX = "[Request interrupted by user"


@dataclass(slots=True)
class TranscriptFile:
    path: Path
    project_id: str
    mtime: float


@dataclass(slots=True)
class MessageNode:
    uuid: str
    type: str
    parent_uuid: str | None
    timestamp: str | None
    is_sidechain: bool
    is_meta: bool
    session_id: str | None
    cwd: str | None
    request_id: str | None
    message: dict[str, Any] | None
    raw: dict[str, Any]
    file: TranscriptFile


@dataclass(slots=True)
class TranscriptIndex:
    """Arena of nodes by id plus the derived parent -> children index."""

    messages: dict[str, MessageNode] = field(default_factory=dict)
    children: dict[str, set[str]] = field(default_factory=dict)
    summaries: dict[str, str] = field(default_factory=dict)
    leaf_files: dict[str, TranscriptFile] = field(default_factory=dict)


def resolve_projects_dir(base: str) -> Path:
    path = Path(base).expanduser()
    return path if path.name == "projects" else path / "projects"


def resolve_claude_dirs() -> list[Path]:
    dirs: list[Path] = []
    for base in config.claude_config_dirs():
        projects = resolve_projects_dir(base)
        if projects not in dirs:
            dirs.append(projects)
    return dirs


def iter_transcript_files(claude_dirs: list[Path]) -> list[TranscriptFile]:
    files: list[TranscriptFile] = []
    for root in claude_dirs:
        try:
            projects = list(root.iterdir())
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning(f"Failed to read Claude projects directory {root}: {exc}")
            continue

        for project in projects:
            if not project.is_dir():
                continue
            try:
                entries = list(project.iterdir())
            except OSError:
                continue
            for entry in entries:
                if entry.suffix != ".jsonl" or not entry.is_file():
                    continue
                try:
                    mtime = entry.stat().st_mtime
                except OSError:
                    continue
                files.append(TranscriptFile(path=entry, project_id=project.name, mtime=mtime))

    files.sort(key=lambda f: f.mtime, reverse=True)
    return files


def _message_payload(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, dict):
        return None
    usage = value.get("usage")
    return {
        "id": value.get("id") if isinstance(value.get("id"), str) else None,
        "role": value.get("role") if isinstance(value.get("role"), str) else None,
        "content": value.get("content"),
        "model": value.get("model") if isinstance(value.get("model"), str) else None,
        "usage": usage if isinstance(usage, dict) and usage else None,
    }


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def read_transcript(file: TranscriptFile, index: TranscriptIndex) -> None:
    """Stream one transcript file into the shared index."""
    with file.path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue

            typ = obj.get("type") if isinstance(obj.get("type"), str) else ""
            if typ == "summary":
                leaf_uuid = _str_or_none(obj.get("leafUuid"))
                text = _str_or_none(obj.get("summary"))
                if leaf_uuid and text:
                    index.summaries[leaf_uuid] = text
                    index.leaf_files[leaf_uuid] = file
                continue

            uuid = _str_or_none(obj.get("uuid"))
            if not uuid:
                continue

            parent_uuid = _str_or_none(obj.get("parentUuid"))
            index.messages[uuid] = MessageNode(
                uuid=uuid,
                type=typ,
                parent_uuid=parent_uuid,
                timestamp=_str_or_none(obj.get("timestamp")),
                is_sidechain=bool(obj.get("isSidechain")),
                is_meta=bool(obj.get("isMeta")),
                session_id=_str_or_none(obj.get("sessionId")),
                cwd=_str_or_none(obj.get("cwd")),
                request_id=as_non_empty_str(obj.get("requestId")),
                message=_message_payload(obj.get("message")),
                raw=obj,
                file=file,
            )
            index.leaf_files[uuid] = file
            if parent_uuid:
                index.children.setdefault(parent_uuid, set()).add(uuid)


def find_leaves(index: TranscriptIndex) -> list[MessageNode]:
    """Leaves ordered oldest first so earlier branches claim shared usage."""
    leaves = [m for uuid, m in index.messages.items() if uuid not in index.children]
    min_ts = datetime.min.replace(tzinfo=UTC)
    leaves.sort(key=lambda m: parse_ts(m.timestamp) or min_ts)
    return leaves


def build_transcript(leaf: MessageNode, messages: dict[str, MessageNode]) -> list[MessageNode]:
    """Walk parent links back to the root, stopping at a gap or a cycle."""
    transcript: list[MessageNode] = []
    visited: set[str] = set()
    current: MessageNode | None = leaf
    while current is not None and current.uuid not in visited:
        visited.add(current.uuid)
        transcript.append(current)
        if not current.parent_uuid:
            break
        current = messages.get(current.parent_uuid)
    transcript.reverse()
    return transcript


def usage_key(node: MessageNode) -> str:
    message_id = as_non_empty_str((node.message or {}).get("id"))
    if message_id and node.request_id:
        return f"{message_id}:{node.request_id}"
    return message_id or node.request_id or node.uuid


def collect_usage_messages(transcript: list[MessageNode]) -> dict[str, MessageNode]:
    """Assistant nodes carrying usage, keyed (and deduplicated) by usage_key."""
    unique: dict[str, MessageNode] = {}
    for node in transcript:
        if node.type != "assistant" or not node.message or not node.message.get("usage"):
            continue
        unique[usage_key(node)] = node
    return unique


def message_text(node: MessageNode) -> str | None:
    if not node.message:
        return None
    content = node.message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict):
            for key in ("content", "text"):
                if isinstance(first.get(key), str):
                    return first[key]
    return None


def is_tool_result(node: MessageNode) -> bool:
    content = (node.message or {}).get("content")
    if not isinstance(content, list):
        return False
    return any(isinstance(item, dict) and item.get("type") == "tool_result" for item in content)


def is_preview_candidate(node: MessageNode, text: str) -> bool:
    """False for wrappers Claude Code writes on the user's behalf."""
    stripped = text.strip()
    if not stripped or node.is_meta or stripped.startswith(CAVEAT_PREFIX):
        return False
    if any(marker in stripped for marker in COMMAND_MARKERS):
        return False
    if any(marker in stripped for marker in LOCAL_COMMAND_MARKERS):
        return False
    if stripped.startswith(INTERRUPTED_PREFIX):
        return False
    return not is_tool_result(node)


def first_user_text(transcript: list[MessageNode]) -> str | None:
    for node in transcript:
        if node.type != "user":
            continue
        text = message_text(node)
        if text is not None and is_preview_candidate(node, text):
            return text
    return None


def decode_project_path(project_id: str | None) -> str | None:
    if not project_id:
        return None
    if project_id.startswith("-"):
        return project_id.replace("-", os.sep)
    return project_id


def build_session(
    leaf: MessageNode,
    transcript: list[MessageNode],
    usage_messages: list[MessageNode],
    file: TranscriptFile | None,
    summary: str | None,
    head_limit: int,
) -> SessionRecord | None:
    timestamp = parse_ts(leaf.timestamp)
    if timestamp is None and file is not None:
        timestamp = datetime.fromtimestamp(file.mtime, tz=UTC)
    if timestamp is None or not usage_messages:
        return None

    acc = UsageAccumulator()
    for node in usage_messages:
        message = node.message or {}
        acc.add(message.get("model"), usage_from_claude(message.get("usage")))

    text = first_user_text(transcript)
    project_id = file.project_id if file else None
    project_path = decode_project_path(project_id)
    cwd = next((node.cwd for node in transcript if node.cwd), None) or project_path

    return SessionRecord(
        id=leaf.uuid,
        source=SOURCE_CLAUDE,
        path=str(file.path) if file else "",
        resume_target=leaf.session_id or leaf.uuid,
        timestamp=timestamp,
        preview=summarize(text, PREVIEW_LENGTH) if text else None,
        token_usage=acc.totals,
        model_usage=acc.by_model,
        fork_signature=summarize(text, SIGNATURE_LENGTH) if text else None,
        model=acc.primary_model(),
        message_count=len(transcript),
        meta={
            "source": SOURCE_CLAUDE,
            "summary": summary,
            "project_path": project_path,
            "claude_project_id": project_id,
            "transcript_file": str(file.path) if file else None,
            "message_count": len(transcript),
            "cwd": cwd,
        },
        head=[node.raw for node in transcript[:head_limit]],
    )


def scan_claude_sessions(
    claude_dirs: list[Path | str] | None = None,
    *,
    limit: int | None = None,
    head_record_limit: int | None = None,
) -> list[SessionRecord]:
    """Draft Claude Code sessions, newest first, one per admitted leaf."""
    dirs = resolve_claude_dirs() if claude_dirs is None else [Path(d).expanduser() for d in claude_dirs]
    head_limit = config.CLAUDE_HEAD_RECORDS if head_record_limit is None else head_record_limit
    if not dirs:
        return []

    files = iter_transcript_files(dirs)
    if not files:
        logger.debug(f"No Claude transcripts under {', '.join(str(d) for d in dirs)}")
        return []

    index = TranscriptIndex()
    for file in files:
        try:
            read_transcript(file, index)
        except OSError as exc:
            logger.warning(f"Failed to read Claude transcript {file.path}: {exc}")

    sessions: list[SessionRecord] = []
    seen_sessions: set[str] = set()
    consumed_keys: set[str] = set()

    for leaf in find_leaves(index):
        if leaf.uuid in seen_sessions:
            continue

        transcript = build_transcript(leaf, index.messages)
        non_summary = [node for node in transcript if node.type != "summary"]
        if not non_summary:
            continue
        if all(node.is_sidechain for node in non_summary):
            continue

        fresh = {
            key: node
            for key, node in collect_usage_messages(transcript).items()
            if key not in consumed_keys
        }
        if not fresh:
            continue

        session = build_session(
            leaf,
            transcript,
            list(fresh.values()),
            index.leaf_files.get(leaf.uuid),
            index.summaries.get(leaf.uuid),
            head_limit,
        )
        if session is None:
            continue

        sessions.append(session)
        seen_sessions.add(session.id)
        consumed_keys.update(fresh)

    sessions.sort(key=lambda s: s.timestamp, reverse=True)
    if limit and len(sessions) > limit:
        sessions = sessions[:limit]
    return sessions
