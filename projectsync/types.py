from __future__ import annotations

from typing import Any, TypedDict


class SharedRef(TypedDict):
    uid: str
    token: str


class ProjectMeta(TypedDict):
    name: str
    author: str
    shared: SharedRef
    createdAt: int
    lastEdited: int


class ProjectDocument(TypedDict):
    device: dict[str, Any]
    blocks: dict[str, Any]
    files: dict[str, Any]
    project: ProjectMeta


class SharedProjectSummary(TypedDict):
    uid: str
    name: str
    author: str
    lastEdited: int


class Command(TypedDict):
    owner: str
    action: str
    args: list[Any]
    origin: str
