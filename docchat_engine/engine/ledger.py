"""Version ledger: append-only document snapshots with preview/revert/delete."""

from __future__ import annotations

import logging
import time
from typing import Callable

from docchat_engine.engine.models import DocumentVersion

logger = logging.getLogger(__name__)

INITIAL_GENERATION = "Initial generation"
MANUAL_SAVE = "Manual save"


def _now_ms() -> int:
    return int(time.time() * 1000)


class VersionLedger:
    """Owns the document content and every committed snapshot of it.

    ``content`` changes only through ``commit`` (and through ``revert`` /
    ``delete``, which load an existing snapshot). Invalid ids are no-ops.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._versions: list[DocumentVersion] = []
        self._content = ""
        self.current_id: str | None = None
        self.preview_id: str | None = None
        self.dirty = False

    # -- read side -----------------------------------------------------------

    @property
    def versions(self) -> list[DocumentVersion]:
        return list(self._versions)

    @property
    def content(self) -> str:
        return self._content

    @property
    def current(self) -> DocumentVersion | None:
        return self.get(self.current_id) if self.current_id else None

    @property
    def displayed_content(self) -> str:
        """What the editor shows: the previewed snapshot, else the document."""
        if self.preview_id is not None:
            previewed = self.get(self.preview_id)
            if previewed is not None:
                return previewed.content
        return self._content

    def __len__(self) -> int:
        return len(self._versions)

    def get(self, version_id: str) -> DocumentVersion | None:
        return next((v for v in self._versions if v.id == version_id), None)

    def _index(self, version_id: str) -> int:
        return next((i for i, v in enumerate(self._versions) if v.id == version_id), -1)

    # -- mutations -----------------------------------------------------------

    def commit(self, content: str, reason: str) -> DocumentVersion:
        timestamp = self._clock()
        if self._versions and timestamp <= self._versions[-1].timestamp:
            timestamp = self._versions[-1].timestamp + 1
        version = DocumentVersion(timestamp=timestamp, content=content, reason=reason)
        self._versions.append(version)
        self._content = content
        self.current_id = version.id
        self.preview_id = None
        self.dirty = False
        logger.info("committed version %s (%s, %d chars)", version.id, reason, len(content))
        return version

    def mark_dirty(self) -> None:
        """The external editor holds changes not yet saved."""
        self.dirty = True

    def save(self, content: str, reason: str = MANUAL_SAVE) -> DocumentVersion | None:
        """Commit *content* unless it equals the current version's content.

        ``None`` means there was nothing to save.
        """
        current = self.current
        baseline = current.content if current is not None else ""
        if content == baseline:
            logger.info("save skipped: no changes")
            return None
        return self.commit(content, reason)

    def preview(self, version_id: str) -> DocumentVersion | None:
        version = self.get(version_id)
        if version is not None:
            self.preview_id = version.id
        return version

    def exit_preview(self) -> None:
        self.preview_id = None

    def revert(self, version_id: str) -> DocumentVersion | None:
        """Drop every version after *version_id* and make it current."""
        index = self._index(version_id)
        if index == -1:
            return None
        dropped = len(self._versions) - index - 1
        del self._versions[index + 1:]
        version = self._versions[index]
        self._content = version.content
        self.current_id = version.id
        self.preview_id = None
        self.dirty = False
        logger.info("reverted to version %s (dropped %d)", version.id, dropped)
        return version

    def delete(self, version_id: str) -> bool:
        """Remove one version and fall back to its predecessor.

        The first remaining version is used when the deleted one was first.
        Deleting the last version empties the document.
        """
        index = self._index(version_id)
        if index == -1:
            return False
        del self._versions[index]
        if self.preview_id == version_id:
            self.preview_id = None
        self.dirty = False

        if not self._versions:
            self._content = ""
            self.current_id = None
            self.preview_id = None
            logger.info("deleted version %s; ledger empty", version_id)
            return True

        fallback = self._versions[index - 1] if index > 0 else self._versions[0]
        self._content = fallback.content
        self.current_id = fallback.id
        logger.info("deleted version %s; current is now %s", version_id, fallback.id)
        return True

