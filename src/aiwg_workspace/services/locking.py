# src/aiwg_workspace/services/locking.py
"""
Cross-process mutual exclusion through an exclusively-created marker file.

Presence of the marker means the lock is held. There is no lease or
heartbeat: a crashed holder leaves the marker behind and it has to be
removed by hand.
"""
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from aiwg_workspace.errors import LockError

logger = logging.getLogger(__name__)


class LockFile:
    """
    Marker-file lock with bounded, linearly increasing retry backoff.

    Usage:
        with LockFile(path):
            ...  # exclusive section
    """

    def __init__(
        self,
        path: Path,
        retries: int = 3,
        retry_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = Path(path)
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._held = False

    def _payload(self) -> str:
        return json.dumps(
            {"pid": os.getpid(), "timestamp": datetime.now(timezone.utc).isoformat()}
        )

    def holder(self) -> Optional[dict]:
        """Contents of the current marker, if any."""
        try:
            return json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError):
            return {}

    def is_locked(self) -> bool:
        return self.path.exists()

    def acquire(self) -> None:
        """
        Create the marker exclusively.

        Raises:
            LockError: the marker still exists after all retries
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.retries + 1):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if attempt == self.retries:
                    break
                delay = self.retry_delay * attempt
                logger.debug(
                    f"Lock {self.path} busy (attempt {attempt}/{self.retries}), retrying in {delay:.2f}s"
                )
                self._sleep(delay)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(self._payload())
            self._held = True
            return

        logger.warning(f"Could not acquire lock {self.path}, held by {self.holder()}")
        raise LockError(
            f"Could not acquire lock {self.path} after {self.retries} attempts. "
            f"If no other process is running, remove the marker manually.",
            {"path": str(self.path), "holder": self.holder()},
        )

    def release(self) -> None:
        """Remove the marker. Tolerates it already being gone."""
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "LockFile":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
