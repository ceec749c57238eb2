"""
Session Store

Persists the credential bundle of the single WhatsApp account this process
drives.

Directory Structure:
<session_dir>/
└── creds.json        # credential bundle + sync cursor

Writes go to a temporary file in the same directory and are moved into
place with ``os.replace``, so a reader sees either the old or the new file.
``clear()`` renames the whole directory to a tombstone before deleting it,
so a concurrent ``load()`` either finds the complete store or nothing.
"""

import json
import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..errors import SessionStoreError

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"


@dataclass
class Session:
    """Opaque credential bundle plus the transport's sync cursor."""

    creds: Dict[str, Any] = field(default_factory=dict)
    sync_cursor: Optional[int] = None
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def is_registered(self) -> bool:
        return bool(self.creds.get("registered"))

    def merge(self, update: Dict[str, Any]) -> "Session":
        """
        Apply a credentials-changed update from the transport.

        The update carries only the keys that changed. A ``syncCursor`` key is
        lifted out of the credential bundle and only ever moves forward.
        """
        update = dict(update)
        cursor = update.pop("syncCursor", None)

        creds = dict(self.creds)
        creds.update(update)

        sync_cursor = self.sync_cursor
        if cursor is not None and (sync_cursor is None or cursor > sync_cursor):
            sync_cursor = cursor

        return Session(creds=creds, sync_cursor=sync_cursor)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creds": self.creds,
            "sync_cursor": self.sync_cursor,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            creds=data.get("creds", {}),
            sync_cursor=data.get("sync_cursor"),
            updated_at=data.get("updated_at", datetime.now(timezone.utc).isoformat()),
        )


class SessionStore:
    """File-backed store for one account's session."""

    def __init__(self, session_dir: Union[str, Path]):
        self.session_dir = Path(session_dir)

    @property
    def creds_path(self) -> Path:
        return self.session_dir / CREDS_FILE

    def load(self) -> Optional[Session]:
        """
        Read the persisted session.

        Returns:
            Session, or None when nothing is stored

        Raises:
            SessionStoreError: If the stored material is unreadable or corrupt
        """
        try:
            raw = self.creds_path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SessionStoreError(f"Cannot read session from {self.creds_path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SessionStoreError(f"Corrupt session file {self.creds_path}: {e}") from e

        if not isinstance(data, dict):
            raise SessionStoreError(f"Corrupt session file {self.creds_path}: expected an object")

        return Session.from_dict(data)

    def save(self, session: Session):
        """
        Durably write ``session``.

        Raises:
            SessionStoreError: If the write fails; the previous file is left intact
        """
        tmp_path = None
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.session_dir, 0o700)

            fd, tmp_path = tempfile.mkstemp(prefix=".creds-", suffix=".tmp", dir=self.session_dir)
            with os.fdopen(fd, "w") as f:
                json.dump(session.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_path, self.creds_path)
            tmp_path = None
        except OSError as e:
            raise SessionStoreError(f"Cannot save session to {self.creds_path}: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def clear(self):
        """
        Delete all persisted material. Clearing an empty store is a no-op.

        Raises:
            SessionStoreError: If the store could not be removed
        """
        if not self.session_dir.exists():
            return

        tombstone = self.session_dir.with_name(f".{self.session_dir.name}.trash-{uuid.uuid4().hex[:8]}")
        try:
            os.replace(self.session_dir, tombstone)
        except FileNotFoundError:
            return
        except OSError as e:
            raise SessionStoreError(f"Cannot clear session at {self.session_dir}: {e}") from e

        shutil.rmtree(tombstone, ignore_errors=True)
        logger.info(f"Session data cleared at {self.session_dir}")
