from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from projectsync.bus import BroadcastChannel, CommandBus
from projectsync.registry import LocalOnly, Networked, ProjectRegistry, RegistryMode
from projectsync.remote import RemoteError
from projectsync.storage import KeyValueStore


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PROJECTSYNC_CONFIG", str(tmp_path / "config.json"))
    for name in (
        "PROJECTSYNC_STORE",
        "PROJECTSYNC_API_URL",
        "PROJECTSYNC_API_TIMEOUT_S",
        "PROJECTSYNC_USERNAME",
        "PROJECTSYNC_DEFAULT_TARGET",
        "PROJECTSYNC_SHARED_INITIAL_LIMIT",
        "PROJECTSYNC_SHARED_PAGE_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)


class CountingStore(KeyValueStore):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.writes: list[str] = []
        self.removals: list[str] = []

    def set(self, key: str, value: str) -> str:
        self.writes.append(key)
        return super().set(key, value)

    def remove(self, key: str) -> None:
        self.removals.append(key)
        super().remove(key)


class FakeSharedAPI:
    """In-memory stand-in for the shared projects registry service."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.pages: list[dict[str, Any]] = []
        self.documents: dict[str, dict[str, Any]] = {}
        self.fail: set[str] = set()
        self.uid_override: dict[str, str] = {}
        self._counter = 0

    def _record(self, command: str, params: dict[str, Any] | None) -> dict[str, Any]:
        params = dict(params or {})
        self.calls.append((command, params))
        if command in self.fail:
            raise RemoteError(command, "boom", status=500)
        return params

    def ls(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self._record("ls", params)
        if not self.pages:
            return {"projects": []}
        return self.pages.pop(0)

    def o(self, params: dict[str, Any]) -> dict[str, Any]:
        params = self._record("o", params)
        document = self.documents.get(params["uid"])
        if document is None:
            return {}
        return {"projects": [{"data": document}]}

    def cp(self, params: dict[str, Any]) -> dict[str, Any]:
        params = self._record("cp", params)
        self._counter += 1
        uid = f"s{self._counter}"
        self.documents[uid] = params["data"]
        return {"uid": uid, "token": f"token-{uid}"}

    def w(self, params: dict[str, Any]) -> dict[str, Any]:
        params = self._record("w", params)
        uid = params["data"]["project"]["shared"]["uid"]
        return {"uid": self.uid_override.get("w", uid)}

    def rm(self, params: dict[str, Any]) -> dict[str, Any]:
        params = self._record("rm", params)
        self.documents.pop(params["uid"], None)
        return {"uid": self.uid_override.get("rm", params["uid"])}


@pytest.fixture
def store(tmp_path: Path) -> Iterator[CountingStore]:
    kv = CountingStore(tmp_path / "store.sqlite")
    yield kv
    kv.close()


@pytest.fixture
def channel() -> BroadcastChannel:
    return BroadcastChannel()


@pytest.fixture
def fake_api() -> FakeSharedAPI:
    return FakeSharedAPI()


@pytest.fixture
def open_tab(
    store: CountingStore, channel: BroadcastChannel
) -> Callable[..., ProjectRegistry]:
    def _open(mode: RegistryMode | None = None) -> ProjectRegistry:
        return ProjectRegistry(store, CommandBus(channel), mode=mode or LocalOnly())

    return _open


@pytest.fixture
def networked_tab(
    open_tab: Callable[..., ProjectRegistry], fake_api: FakeSharedAPI
) -> Callable[..., ProjectRegistry]:
    def _open(notify: Callable[[str], None] | None = None) -> ProjectRegistry:
        return open_tab(Networked(fake_api, notify=notify))

    return _open
