"""Discovery service: find a cluster leader or register as one."""

from __future__ import annotations

import abc
import datetime as _dt
import logging
import queue
import random
import threading
import time
from typing import Any

logger = logging.getLogger("replidb.disco")

LEADER_CHANNEL_LENGTH = 5  # room for fast back-to-back leadership changes
_POLL_INTERVAL = 0.05


class Client(abc.ABC):
    """A discovery backend."""

    @abc.abstractmethod
    def get_leader(self) -> tuple[str, str, str] | None:
        """Return (id, api_addr, addr) of the known leader, or None."""

    @abc.abstractmethod
    def initialize_leader(self, node_id: str, api_addr: str, addr: str) -> bool:
        """Try to record this node as leader; return whether it succeeded."""

    @abc.abstractmethod
    def set_leader(self, node_id: str, api_addr: str, addr: str) -> None:
        """Record this node as leader unconditionally."""

    @abc.abstractmethod
    def __str__(self) -> str:
        """Name of the discovery mode."""


class Store(abc.ABC):
    """The consensus system whose leadership is reported."""

    @abc.abstractmethod
    def is_leader(self) -> bool:
        """Return whether this node is currently the leader."""

    @abc.abstractmethod
    def register_leader_change(self, changes: queue.Queue) -> None:
        """Arrange for an item to be put on ``changes`` at each leadership change."""


def jitter(duration: float) -> float:
    """Return ``duration`` plus a random amount up to ``duration``."""
    return duration + random.random() * duration


class Service:
    """Registers a node with a discovery backend and reports leadership."""

    def __init__(self, client: Client, store: Store) -> None:
        self.register_interval = 3.0
        self.report_interval = 30.0
        self._client = client
        self._store = store
        self._lock = threading.Lock()
        self._last_contact: _dt.datetime | None = None

    def register(self, node_id: str, api_addr: str, addr: str) -> tuple[bool, str]:
        """Block until this node becomes leader or learns of one.

        Returns whether this node registered as leader, and the API address
        of the leader.
        """
        while True:
            try:
                leader = self._client.get_leader()
            except Exception as exc:
                logger.warning("failed to get leader: %s", exc)
                leader = None
            if leader is not None:
                return False, leader[1]

            try:
                ok = self._client.initialize_leader(node_id, api_addr, addr)
            except Exception as exc:
                logger.warning("failed to initialize as Leader: %s", exc)
                ok = False
            if ok:
                self._update_contact()
                return True, api_addr

            time.sleep(jitter(self.register_interval))

    def start_reporting(self, node_id: str, api_addr: str, addr: str) -> threading.Event:
        """Report this node as leader on every leadership change and periodically.

        Reporting runs in a background thread and stops once the returned
        event is set.
        """
        period = 10 * self.report_interval
        changes: queue.Queue = queue.Queue(maxsize=LEADER_CHANNEL_LENGTH)
        self._store.register_leader_change(changes)
        done = threading.Event()

        def update(changed: bool) -> None:
            if not self._store.is_leader():
                return
            try:
                self._client.set_leader(node_id, api_addr, addr)
            except Exception as exc:
                logger.warning(
                    "failed to update discovery service with Leader details: %s", exc
                )
            if changed:
                logger.info(
                    "updated Leader API address to %s due to leadership change", api_addr
                )
            self._update_contact()

        def run() -> None:
            next_tick = time.monotonic() + period
            while not done.is_set():
                timeout = max(0.0, min(next_tick - time.monotonic(), _POLL_INTERVAL))
                try:
                    changes.get(timeout=timeout)
                except queue.Empty:
                    pass
                else:
                    if not done.is_set():
                        update(True)
                    continue
                now = time.monotonic()
                if now >= next_tick and not done.is_set():
                    update(False)
                    next_tick = now + period

        threading.Thread(target=run, name="disco-reporter", daemon=True).start()
        return done

    def stats(self) -> dict[str, Any]:
        """Return diagnostic information on the service."""
        with self._lock:
            return {
                "mode": str(self._client),
                "register_interval": self.register_interval,
                "report_interval": self.report_interval,
                "last_contact": self._last_contact,
            }

    def _update_contact(self) -> None:
        with self._lock:
            self._last_contact = _dt.datetime.now(_dt.timezone.utc)