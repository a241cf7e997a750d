"""
File-backed content source for the agent's editable configuration.

Variants are applied by overwriting the target file and rolled back by
restoring the bytes that were there before the first temporary write.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from agent_harness.config import settings
from agent_harness.utils import content_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentVersion:
    content: str
    version: str


class FileContentSource:
    """Reads and temporarily replaces files under a content root."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self._root = Path(root or settings.storage.content_root)
        self._originals: dict[str, Optional[str]] = {}

    def _resolve(self, target: str) -> Path:
        path = (self._root / target).resolve()
        if self._root.resolve() not in path.parents and path != self._root.resolve():
            raise ValueError(f"Target {target!r} is outside the content root {self._root}")
        return path

    def get_content(self, target: str) -> ContentVersion:
        text = self._resolve(target).read_text(encoding="utf-8")
        return ContentVersion(content=text, version=content_hash(text)[:12])

    def apply_temporary(self, target: str, content: str) -> None:
        path = self._resolve(target)
        if target not in self._originals:
            self._originals[target] = (
                path.read_text(encoding="utf-8") if path.exists() else None
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.debug("Applied temporary content to %s", target)

    def rollback(self, target: str) -> None:
        if target not in self._originals:
            return
        original = self._originals.pop(target)
        path = self._resolve(target)
        if original is None:
            path.unlink(missing_ok=True)
        else:
            path.write_text(original, encoding="utf-8")
        logger.debug("Rolled back %s", target)

    def has_pending(self, target: str) -> bool:
        return target in self._originals

    def pending_targets(self) -> list[str]:
        return list(self._originals)
