from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, cast

from .bus import CommandBus
from .documents import (
    PROJECT_KEY_PATTERN,
    SECTIONS,
    DocumentError,
    ProjectDefaults,
    dump_document,
    empty_project,
    export_document,
    export_filename,
    last_edited,
    parse_document,
    project_key,
    project_meta,
    shared_uid,
)
from .identity import ClientIdentity, ensure_client_identity
from .remote import RemoteError
from .shared import SharedProjectCache, SharedProjectsAPI
from .storage import KeyValueStore
from .types import ProjectDocument, SharedProjectSummary
from .utils import new_uid, now_ms

logger = logging.getLogger(__name__)

OWNER = "project"
LOAD_FLAG = "load"

Watcher = Callable[[str, str], None]


class SectionLoader(Protocol):
    def load(self, value: Any, origin_tab_uid: str | None = None) -> None: ...


@dataclass(frozen=True)
class LocalOnly:
    pass


@dataclass(frozen=True)
class Networked:
    api: SharedProjectsAPI
    notify: Callable[[str], None] | None = None
    initial_limit: int = 5
    page_limit: int = 10


RegistryMode = LocalOnly | Networked


@dataclass
class _Hooks:
    loaders: dict[str, SectionLoader] = field(default_factory=dict)
    watchers: list[Watcher] = field(default_factory=list)


class ProjectRegistry:
    """One tab's view of the project collection.

    Mutations are broadcast to every tab, this one included, and applied by the
    same handlers everywhere. Only the tab that started a mutation writes it to
    the store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        bus: CommandBus,
        *,
        mode: RegistryMode | None = None,
        defaults: ProjectDefaults | None = None,
        username: str | None = None,
    ):
        self.store = store
        self.bus = bus
        self.mode: RegistryMode = mode if mode is not None else LocalOnly()
        self.defaults = defaults or ProjectDefaults()
        self.projects: dict[str, ProjectDocument] = {}
        self.current_uid: str | None = None
        self.started = False
        self._hooks = _Hooks()

        self.identity: ClientIdentity = ensure_client_identity(store, username=username)

        self.shared: SharedProjectCache | None = None
        if isinstance(self.mode, Networked):
            self.shared = SharedProjectCache(
                self.mode.api,
                self.create,
                notify=self.mode.notify,
                initial_limit=self.mode.initial_limit,
                page_limit=self.mode.page_limit,
            )

        bus.add(
            OWNER,
            {
                "new": self._apply_new,
                "remove": self._apply_remove,
                "update": self._apply_update,
            },
        )

        for uid in store.keys(PROJECT_KEY_PATTERN):
            raw = store.fetch(project_key(uid))
            if raw is None:
                continue
            try:
                self.projects[uid] = parse_document(raw)
            except DocumentError as exc:
                logger.warning("skipping unreadable project %s", uid, exc_info=exc)

        if not self.projects:
            self.create()

    @property
    def tab_uid(self) -> str:
        return self.bus.tab_uid

    @property
    def networked(self) -> bool:
        return self.shared is not None

    def __len__(self) -> int:
        return len(self.projects)

    def __contains__(self, uid: object) -> bool:
        return uid in self.projects

    def get(self, uid: str | None = None) -> ProjectDocument:
        return self.projects[self._resolve(uid)]

    def start(self) -> str | None:
        """Select the most recently edited project and prime the shared list."""

        if not self.started:
            self.started = True
            self.select(self.most_recent())
            if self.shared is not None:
                self.shared.prime()
        return self.current_uid

    def register_loader(self, section: str, loader: SectionLoader) -> None:
        if section not in SECTIONS or section == OWNER:
            raise ValueError(f"unknown loadable section: {section}")
        self._hooks.loaders[section] = loader

    def watch(self, callback: Watcher) -> None:
        self._hooks.watchers.append(callback)

    # Mutations

    def create(self, document: str | bytes | Mapping[str, Any] | None = None) -> str:
        uid = new_uid()
        while uid in self.projects:
            uid = new_uid()
        if document is None:
            project = empty_project(self.defaults, author=self.identity.username)
        else:
            project = parse_document(document)

        self.bus.dispatch(OWNER, "new", [uid, project])
        self.store.set(project_key(uid), dump_document(self.projects[uid]))
        return uid

    def import_document(self, document: str | bytes | Mapping[str, Any]) -> str:
        return self.create(document)

    def remove(self, uid: str) -> None:
        if uid not in self.projects:
            raise KeyError(uid)
        if len(self.projects) == 1:
            self.select(self.create())

        if shared_uid(self.projects[uid]):
            self.unshare(uid)

        self.bus.dispatch(OWNER, "remove", [uid])
        self.store.remove(project_key(uid))

    def update(
        self,
        sections: Mapping[str, Any],
        uid: str | None = None,
        *,
        load: bool = True,
    ) -> None:
        uid = self._resolve(uid)
        data = dict(sections)
        if LOAD_FLAG in data:
            load = data.pop(LOAD_FLAG) is not False and load
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ValueError(f"unknown project sections: {', '.join(unknown)}")

        if OWNER not in data:
            data[OWNER] = dict(project_meta(self.projects[uid]))
        else:
            data[OWNER] = dict(data[OWNER])
        previous = last_edited(self.projects[uid])
        data[OWNER]["lastEdited"] = max(now_ms(), previous)

        self.bus.dispatch(OWNER, "update", [uid, data, load, self.tab_uid])
        self.store.set(project_key(uid), dump_document(self.projects[uid]))

    def rename(self, uid: str, name: str) -> None:
        name = name.strip()
        if not name:
            return
        meta = dict(project_meta(self.get(uid)))
        meta["name"] = name
        self.update({OWNER: meta}, uid)

    def set(self, sections: Mapping[str, Any], uid: str | None = None) -> None:
        document = cast(dict[str, Any], self.projects[self._resolve(uid)])
        for key, value in sections.items():
            document[key] = value

    def write(self, uid: str | None = None) -> None:
        uid = self._resolve(uid)
        self.store.set(project_key(uid), dump_document(self.projects[uid]))

    def save(self, uid: str | None = None) -> None:
        uid = self._resolve(uid)
        meta = project_meta(self.projects[uid])
        meta["lastEdited"] = max(now_ms(), last_edited(self.projects[uid]))
        self.write(uid)

    # Selection

    def select(self, uid: str | None) -> None:
        if uid is None or uid == self.current_uid or uid not in self.projects:
            return
        if self.current_uid is not None:
            self.unload(self.current_uid)
        self.load(uid)

    def load(self, uid: str) -> str:
        self.current_uid = uid
        document = self.projects.get(uid)
        if document is not None:
            for section, loader in self._hooks.loaders.items():
                if section in document:
                    loader.load(document[section])
        return uid

    def unload(self, uid: str) -> None:
        for loader in self._hooks.loaders.values():
            unload = getattr(loader, "unload", None)
            if callable(unload):
                unload()

    def most_recent(self) -> str | None:
        newest: str | None = None
        timestamp = 0
        for uid, document in self.projects.items():
            edited = last_edited(document)
            if edited >= timestamp:
                timestamp = edited
                newest = uid
        return newest

    # Export

    def export(self, uid: str) -> str:
        return export_document(self.get(uid))

    def export_filename(self, uid: str) -> str:
        return export_filename(self.get(uid))

    # Sharing

    def share(self, uid: str) -> bool:
        if self.shared is None:
            return False
        document = self.get(uid)
        if shared_uid(document):
            logger.info("project %s is already shared", uid)
            return False
        try:
            obj = self.shared.api.cp({"cors_token": self.identity.cors_token, "data": document})
        except RemoteError as exc:
            logger.warning("share failed for project %s", uid, exc_info=exc)
            return False
        if not obj.get("uid") or not obj.get("token"):
            logger.warning("share response for project %s has no uid/token", uid)
            return False

        meta = dict(project_meta(document))
        meta["shared"] = {"uid": str(obj["uid"]), "token": str(obj["token"])}
        self.update({OWNER: meta}, uid)
        meta = project_meta(self.get(uid))
        summary: SharedProjectSummary = {
            "uid": meta["shared"]["uid"],
            "name": meta["name"],
            "author": meta["author"],
            "lastEdited": meta["lastEdited"],
        }
        self.shared.prepend(summary)
        return True

    def update_shared(self, uid: str) -> bool:
        if self.shared is None:
            return False
        document = self.get(uid)
        meta = project_meta(document)
        expected = shared_uid(document)
        if not expected:
            logger.info("project %s is not shared", uid)
            return False
        try:
            obj = self.shared.api.w({"cors_token": self.identity.cors_token, "data": document})
        except RemoteError as exc:
            logger.warning("shared update failed for project %s", uid, exc_info=exc)
            return False
        if obj.get("uid") != expected:
            logger.debug("discarding stale shared update response for %s", uid)
            return False
        self.shared.refresh(
            expected,
            name=meta["name"],
            author=meta["author"],
            lastEdited=meta["lastEdited"],
        )
        return True

    def unshare(self, uid: str) -> bool:
        if self.shared is None:
            return False
        meta = project_meta(self.get(uid))
        expected = shared_uid(self.get(uid))
        if not expected:
            logger.info("project %s is not shared", uid)
            return False
        try:
            obj = self.shared.api.rm(
                {
                    "uid": expected,
                    "token": meta["shared"]["token"],
                    "cors_token": self.identity.cors_token,
                }
            )
        except RemoteError as exc:
            logger.warning("unshare failed for project %s", uid, exc_info=exc)
            return False
        if obj.get("uid") != expected:
            logger.debug("discarding stale unshare response for %s", uid)
            return False
        if uid in self.projects:
            cleared = dict(project_meta(self.projects[uid]))
            cleared["shared"] = {"uid": "", "token": ""}
            self.update({OWNER: cleared}, uid)
        self.shared.discard(expected)
        return True

    # Broadcast handlers

    def _apply_new(self, uid: str, project: ProjectDocument) -> None:
        self.projects[uid] = project
        self._emit("new", uid)

    def _apply_remove(self, uid: str) -> None:
        self.projects.pop(uid, None)
        self._emit("remove", uid)
        if uid == self.current_uid:
            self.current_uid = None
            if self.projects:
                self.select(self.most_recent())

    def _apply_update(
        self, uid: str, data: dict[str, Any], load: bool, origin_tab_uid: str
    ) -> None:
        document = self.projects.get(uid)
        if document is None:
            logger.debug("update for unknown project %s from tab %s", uid, origin_tab_uid)
            return
        target = cast(dict[str, Any], document)
        for key, value in data.items():
            target[key] = value
        if not load:
            return
        if OWNER in data:
            self._emit("update", uid)
        if uid != self.current_uid:
            return
        for key, value in data.items():
            loader = self._hooks.loaders.get(key)
            if loader is not None:
                loader.load(value, origin_tab_uid)

    def _emit(self, event: str, uid: str) -> None:
        for callback in list(self._hooks.watchers):
            callback(event, uid)

    def _resolve(self, uid: str | None) -> str:
        resolved = self.current_uid if uid is None else uid
        if resolved is None:
            raise LookupError("no project selected")
        if resolved not in self.projects:
            raise KeyError(resolved)
        return resolved
