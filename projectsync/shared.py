from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from typing import Any, Protocol, cast

from .remote import RemoteError
from .types import SharedProjectSummary
from .utils import get_min, now_ms, push_unique

logger = logging.getLogger(__name__)

NO_OLDER_NOTICE = "Project: No older shared projects."
GONE_NOTICE = "Project: Shared project does not exist anymore."


class SharedProjectsAPI(Protocol):
    def ls(self, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def o(self, params: dict[str, Any]) -> dict[str, Any]: ...

    def cp(self, params: dict[str, Any]) -> dict[str, Any]: ...

    def w(self, params: dict[str, Any]) -> dict[str, Any]: ...

    def rm(self, params: dict[str, Any]) -> dict[str, Any]: ...


def _log_notice(message: str) -> None:
    logger.info(message)


def _summaries_from(payload: Mapping[str, Any]) -> list[SharedProjectSummary]:
    projects = payload.get("projects")
    if not isinstance(projects, list):
        return []
    return [cast(SharedProjectSummary, item) for item in projects if isinstance(item, dict)]


class SharedProjectCache:
    """Locally accumulated window over the remote shared-projects registry.

    ``summaries`` only grows through fetched pages and share confirmations; it
    is not re-sorted and makes no promise of matching the server.
    """

    def __init__(
        self,
        api: SharedProjectsAPI,
        importer: Callable[[Mapping[str, Any]], str],
        *,
        notify: Callable[[str], None] | None = None,
        initial_limit: int = 5,
        page_limit: int = 10,
    ):
        self.api = api
        self.importer = importer
        self.notify = notify or _log_notice
        self.initial_limit = initial_limit
        self.page_limit = page_limit
        self.summaries: list[SharedProjectSummary] = []
        self.primed = False

    def __len__(self) -> int:
        return len(self.summaries)

    def __iter__(self) -> Iterator[SharedProjectSummary]:
        return iter(self.summaries)

    def __contains__(self, uid: object) -> bool:
        return any(item.get("uid") == uid for item in self.summaries)

    def get(self, uid: str) -> SharedProjectSummary | None:
        for item in self.summaries:
            if item.get("uid") == uid:
                return item
        return None

    def prime(self) -> list[SharedProjectSummary] | None:
        if self.primed:
            return []
        self.primed = True
        return self.fetch_page({"from": now_ms(), "limit": self.initial_limit})

    def fetch_page(
        self, args: dict[str, Any] | None = None, *, notify_if_empty: bool = False
    ) -> list[SharedProjectSummary] | None:
        """Fetch one page and keep the summaries not seen before.

        Returns the newly added summaries, or ``None`` when the call failed.
        """

        try:
            payload = self.api.ls(dict(args or {}))
        except RemoteError as exc:
            logger.warning("shared projects fetch failed", exc_info=exc)
            return None
        added = push_unique(self.summaries, _summaries_from(payload), "uid")
        if not added and notify_if_empty:
            self.notify(NO_OLDER_NOTICE)
        return added

    def watermark(self) -> int:
        oldest = get_min(self.summaries, "lastEdited")
        if oldest is None:
            return now_ms()
        return int(oldest["lastEdited"])

    def fetch_older(self) -> list[SharedProjectSummary] | None:
        return self.fetch_page(
            {"from": self.watermark(), "limit": self.page_limit}, notify_if_empty=True
        )

    def clone(self, uid: str) -> str | None:
        try:
            payload = self.api.o({"uid": uid})
        except RemoteError as exc:
            logger.warning("shared project clone failed uid=%s", uid, exc_info=exc)
            return None
        projects = payload.get("projects")
        if not isinstance(projects, list) or not projects or not projects[0].get("data"):
            self.notify(GONE_NOTICE)
            return None
        return self.importer(projects[0]["data"])

    def prepend(self, summary: SharedProjectSummary) -> None:
        self.discard(summary["uid"])
        self.summaries.insert(0, summary)

    def refresh(self, uid: str, **fields: Any) -> bool:
        item = self.get(uid)
        if item is None:
            return False
        cast(dict[str, Any], item).update(fields)
        return True

    def discard(self, uid: str) -> bool:
        before = len(self.summaries)
        self.summaries = [item for item in self.summaries if item.get("uid") != uid]
        return len(self.summaries) != before
