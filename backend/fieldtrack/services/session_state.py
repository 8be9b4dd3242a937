"""Active-session snapshot on disk.

Holds just enough to resume tracking after the process is killed and
restarted: who was checked in and since when. Losing it only costs the
automatic resume, so failures are logged rather than raised.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from fieldtrack.schemas.tracking import TrackingSnapshot

logger = logging.getLogger(__name__)


class SessionSnapshotStore:
    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[TrackingSnapshot]:
        if not self.path.exists():
            return None
        try:
            return TrackingSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Discarding unreadable tracking snapshot {self.path}: {e}")
            self.clear()
            return None

    def save(self, snapshot: TrackingSnapshot) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(snapshot.model_dump_json(), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            logger.warning(f"Could not persist tracking snapshot to {self.path}: {e}")

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove tracking snapshot {self.path}: {e}")
