from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Optional

import filelock
import yaml
from loguru import logger

from .constants import (
    DEFAULT_LOCK_MAX_TIMEOUT,
    DEFAULT_LOCK_MIN_TIMEOUT,
    DEFAULT_LOCK_RETRIES,
)
from .errors import LockTimeoutError


class BoundedFileLock:
    """Exclusive inter-process lock with a bounded, escalating wait.

    Built on :class:`filelock.FileLock`.  Attempt ``n`` waits up to
    ``min_timeout * 2**n`` seconds (capped at ``max_timeout``);
    :class:`LockTimeoutError` is raised once ``retries`` attempts have timed out.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        retries: int = DEFAULT_LOCK_RETRIES,
        min_timeout: float = DEFAULT_LOCK_MIN_TIMEOUT,
        max_timeout: float = DEFAULT_LOCK_MAX_TIMEOUT,
    ):
        self.lock_path = lock_path
        self.retries = max(1, int(retries))
        self.min_timeout = max(0.0, float(min_timeout))
        self.max_timeout = max(self.min_timeout, float(max_timeout))
        self._lock = filelock.FileLock(str(lock_path))

    def _timeout_for(self, attempt: int) -> float:
        return min(self.max_timeout, self.min_timeout * (2 ** attempt))

    def __enter__(self) -> "BoundedFileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(self.retries):
            timeout = self._timeout_for(attempt)
            try:
                self._lock.acquire(timeout=timeout)
            except filelock.Timeout:
                logger.debug(
                    "Lock busy: path={} attempt={} waited={:.2f}s",
                    self.lock_path,
                    attempt + 1,
                    timeout,
                )
                continue
            return self
        raise LockTimeoutError(self.lock_path, self.retries)

    def __exit__(self, exc_type, exc, tb) -> None:
        self._lock.release()


def _atomic_write_json(path: Path, data: dict[str, Any], mode: Optional[int] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    if mode is not None:
        os.chmod(tmp_path, mode)
    os.replace(tmp_path, path)
    # Give other processes a chance to observe the completed write.
    time.sleep(0)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse and IO failures are reported rather than hidden so callers can avoid
    overwriting corrupted durable state files.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None and path.suffix in {".yaml", ".yml"}:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
