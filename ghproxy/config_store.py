"""Hot-reloadable access list configuration.

The active ``AccessPolicy`` lives inside an immutable ``ConfigSnapshot``
that is swapped wholesale on a successful reload. Request threads take
the read side of a ``ReadWriteLock`` to fetch the current snapshot; the
reloader reads and decodes the file without holding any lock and takes
the write side only for the reference swap.

A failed reload (missing file, bad JSON, wrong field types) is logged
and leaves the previous snapshot in effect.

Thread Safety:
- Many concurrent readers, one writer at a time
- Waiting writers block new readers so reloads cannot starve
"""

from __future__ import annotations

import contextlib
import json
import threading
import time
from dataclasses import dataclass, field
from typing import Iterator, Optional

import yaml
from pydantic import ValidationError

from ghproxy.errors import ConfigLoadFailed
from ghproxy.logging_config import get_logger
from ghproxy.policy import AccessPolicy

logger = get_logger(__name__)


class ReadWriteLock:
    """Readers-writer lock with writer preference."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextlib.contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextlib.contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of the active configuration."""

    policy: AccessPolicy = field(default_factory=AccessPolicy)
    source: Optional[str] = None
    version: int = 0
    loaded_at: Optional[float] = None


def load_policy_file(path: str) -> AccessPolicy:
    """Read and decode an access list file.

    JSON is the native format; files ending in ``.yaml`` or ``.yml`` are
    parsed as YAML with the same keys.

    Raises:
        ConfigLoadFailed: On read, decode or validation failure.
    """
    try:
        with open(path, encoding="utf-8") as f:
            if path.endswith((".yaml", ".yml")):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except OSError as e:
        raise ConfigLoadFailed(f"Error loading config {path}: {e}") from e
    except (json.JSONDecodeError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigLoadFailed(f"Error decoding config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigLoadFailed(f"Error decoding config {path}: top level must be an object")

    try:
        return AccessPolicy.model_validate(data)
    except ValidationError as e:
        raise ConfigLoadFailed(f"Error decoding config {path}: {e}") from e


class ConfigStore:
    """Process-wide holder of the current ``ConfigSnapshot``."""

    def __init__(self, path: str, initial: Optional[AccessPolicy] = None):
        """Initialize the store.

        Args:
            path: Access list file read by ``reload``.
            initial: Policy to serve before the first load. Defaults to
                an empty (unrestricted) policy.
        """
        self.path = path
        self._lock = ReadWriteLock()
        self._snapshot = ConfigSnapshot(policy=initial or AccessPolicy())

    def current(self) -> ConfigSnapshot:
        with self._lock.read_locked():
            return self._snapshot

    def _swap(self, policy: AccessPolicy) -> ConfigSnapshot:
        with self._lock.write_locked():
            self._snapshot = ConfigSnapshot(
                policy=policy,
                source=self.path,
                version=self._snapshot.version + 1,
                loaded_at=time.time(),
            )
            return self._snapshot

    def load_initial(self) -> ConfigSnapshot:
        """Synchronous first load; failures propagate to the caller.

        Raises:
            ConfigLoadFailed: If the file cannot be read or decoded.
        """
        snapshot = self._swap(load_policy_file(self.path))
        logger.info(
            "Loaded access lists from %s (allow=%d, deny=%d)",
            self.path,
            len(snapshot.policy.allow),
            len(snapshot.policy.deny),
        )
        return snapshot

    def reload(self) -> bool:
        """Re-read the file and swap the snapshot on success.

        Returns:
            True if the snapshot was replaced, False if the previous one
            was kept because the file could not be read or decoded.
        """
        try:
            policy = load_policy_file(self.path)
        except ConfigLoadFailed as e:
            logger.warning("%s; keeping previous configuration", e)
            return False
        snapshot = self._swap(policy)
        logger.info("Reloaded access lists (version %d)", snapshot.version)
        return True


class ConfigReloader:
    """Periodically calls ``ConfigStore.reload`` on a daemon timer.

    Safe to call ``start`` multiple times - it will only start once.
    """

    def __init__(self, store: ConfigStore, interval: float = 600.0):
        self.store = store
        self.interval = interval
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _schedule(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = threading.Timer(self.interval, self._tick)
            self._timer.daemon = True
            self._timer.start()

    def _tick(self) -> None:
        try:
            self.store.reload()
        except Exception:
            logger.exception("Unexpected error during config reload")
        self._schedule()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        logger.info("Starting config reloader (interval: %ss)", self.interval)
        self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
