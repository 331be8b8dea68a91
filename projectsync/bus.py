from __future__ import annotations

import copy
import logging
from collections import deque
from collections.abc import Callable, Mapping
from typing import Any

from .types import Command
from .utils import new_uid

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class BroadcastChannel:
    """Fan-out hub shared by every tab of one origin.

    Delivery to other tabs is queued per bus and only happens when that bus
    polls. Buses that are closed stop receiving; whatever was pending for them
    is dropped.
    """

    def __init__(self) -> None:
        self._buses: list[CommandBus] = []

    def attach(self, bus: CommandBus) -> None:
        if bus not in self._buses:
            self._buses.append(bus)

    def detach(self, bus: CommandBus) -> None:
        if bus in self._buses:
            self._buses.remove(bus)

    @property
    def buses(self) -> list[CommandBus]:
        return list(self._buses)

    def post(self, command: Command, *, sender: CommandBus) -> int:
        delivered = 0
        for bus in self._buses:
            if bus is sender:
                continue
            bus._enqueue(copy.deepcopy(command))
            delivered += 1
        return delivered

    def flush(self) -> int:
        """Poll every attached bus until no command is pending anywhere."""

        applied = 0
        while True:
            step = sum(bus.poll() for bus in self.buses)
            if step == 0:
                return applied
            applied += step


class CommandBus:
    """One tab's endpoint on a :class:`BroadcastChannel`.

    ``dispatch`` queues the command for every other attached tab, then applies
    it to this tab's own handlers synchronously before returning.
    """

    def __init__(self, channel: BroadcastChannel | None = None, *, tab_uid: str | None = None):
        self.channel = channel if channel is not None else BroadcastChannel()
        self.tab_uid = tab_uid or new_uid()
        self._handlers: dict[str, dict[str, Handler]] = {}
        self._inbox: deque[Command] = deque()
        self.closed = False
        self.channel.attach(self)

    def add(self, owner: str, handlers: Mapping[str, Handler]) -> None:
        registered = self._handlers.setdefault(owner, {})
        registered.update(handlers)

    def dispatch(self, owner: str, action: str, args: list[Any] | tuple[Any, ...]) -> None:
        if self.closed:
            raise RuntimeError("bus closed")
        command: Command = {
            "owner": owner,
            "action": action,
            "args": list(args),
            "origin": self.tab_uid,
        }
        self.channel.post(command, sender=self)
        self._apply(copy.deepcopy(command))

    def pending(self) -> int:
        return len(self._inbox)

    def poll(self, limit: int | None = None) -> int:
        applied = 0
        while self._inbox and (limit is None or applied < limit):
            self._apply(self._inbox.popleft())
            applied += 1
        return applied

    def close(self) -> None:
        self.closed = True
        self._inbox.clear()
        self.channel.detach(self)

    def _enqueue(self, command: Command) -> None:
        if self.closed:
            return
        self._inbox.append(command)

    def _apply(self, command: Command) -> None:
        handlers = self._handlers.get(command["owner"])
        if not handlers:
            return
        handler = handlers.get(command["action"])
        if handler is None:
            logger.debug(
                "no handler for %s.%s on tab %s",
                command["owner"],
                command["action"],
                self.tab_uid,
            )
            return
        handler(*command["args"])
