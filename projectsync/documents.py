from __future__ import annotations

import copy
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, cast

from .types import ProjectDocument, ProjectMeta
from .utils import now_ms

PROJECT_KEY_PREFIX = "project-"
PROJECT_KEY_PATTERN = re.compile(r"^project-(.*)$")

SECTIONS = ("device", "blocks", "files", "project")
EXPORT_SUFFIX = ".bipes.json"


class DocumentError(ValueError):
    pass


@dataclass(frozen=True)
class ProjectDefaults:
    name: str = "Empty project"
    target: str = "esp32"
    blocks_xml: str = '<xml xmlns="https://bipes.net.br/ide"></xml>'
    script_name: str = "script.py"
    script_body: str = "# Create your script here"


def project_key(uid: str) -> str:
    return f"{PROJECT_KEY_PREFIX}{uid}"


def empty_project(
    defaults: ProjectDefaults, *, author: str, now: int | None = None
) -> ProjectDocument:
    timestamp = now_ms() if now is None else now
    return {
        "device": {"target": defaults.target},
        "blocks": {"xml": defaults.blocks_xml},
        "files": {
            "tree": {
                "name": "",
                "files": [{"name": defaults.script_name, "script": defaults.script_body}],
            }
        },
        "project": {
            "name": defaults.name,
            "author": author,
            "shared": {"uid": "", "token": ""},
            "createdAt": timestamp,
            "lastEdited": timestamp,
        },
    }


def parse_document(raw: str | bytes | Mapping[str, Any]) -> ProjectDocument:
    """Accept a document as a mapping or as serialized JSON text.

    Only deserialization is checked; the shape of the sections is not.
    """

    if isinstance(raw, Mapping):
        return cast(ProjectDocument, dict(raw))
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DocumentError("project document is not utf-8") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DocumentError(f"invalid project json: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise DocumentError(f"project document must be an object, got {type(data).__name__}")
    return cast(ProjectDocument, data)


def dump_document(document: Mapping[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False, separators=(",", ":"))


def project_meta(document: Mapping[str, Any]) -> ProjectMeta:
    meta = document.get("project")
    if not isinstance(meta, dict):
        raise DocumentError("project document has no metadata")
    return cast(ProjectMeta, meta)


def shared_uid(document: Mapping[str, Any]) -> str:
    shared = project_meta(document).get("shared") or {}
    return str(shared.get("uid") or "")


def last_edited(document: Mapping[str, Any]) -> int:
    meta = document.get("project")
    if not isinstance(meta, dict):
        return 0
    try:
        return int(meta.get("lastEdited") or 0)
    except (TypeError, ValueError):
        return 0


def strip_shared(document: Mapping[str, Any]) -> dict[str, Any]:
    stripped = copy.deepcopy(dict(document))
    meta = stripped.get("project")
    if isinstance(meta, dict) and "shared" in meta:
        meta["shared"] = {"uid": "", "token": ""}
    return stripped


def export_document(document: Mapping[str, Any]) -> str:
    """Serialize a document for download, never leaking sharing credentials."""

    return dump_document(strip_shared(document))


def export_filename(document: Mapping[str, Any]) -> str:
    name = str(project_meta(document).get("name") or "project").strip() or "project"
    safe = re.sub(r"[\\/:*?\"<>|]+", "_", name)
    return f"{safe}{EXPORT_SUFFIX}"
