"""
Versioned configuration variants and their temporary application.

A variant is the full content of one target file (a prompt, tool module
or config file). Variants are content-addressed per target file, so
registering the same content twice returns the existing variant.
Applying a variant is always scoped: the original content is restored
when the ``applied()`` block exits, however it exits.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from agent_harness.clients.content_source import FileContentSource
from agent_harness.errors import VariantNotFoundError
from agent_harness.schemas.experiment_schema import Variant, VariantType
from agent_harness.storage.database import HarnessDatabase
from agent_harness.utils import content_hash, now_ms, to_base36

logger = logging.getLogger(__name__)


def canonical_path(target_file: str) -> str:
    """Normalize a target path so the same file always has the same key."""
    path = target_file.replace("\\", "/").strip()
    while path.startswith("../") or path.startswith("./"):
        path = path[3:] if path.startswith("../") else path[2:]
    return path


def generate_variant_id(variant_type: VariantType) -> str:
    return f"VAR-{variant_type.value.upper()[:4]}-{to_base36(now_ms())}-{uuid.uuid4().hex[:8]}"


class VariantService:
    """Creates, looks up and temporarily applies variants."""

    def __init__(self, database: HarnessDatabase, content_source: FileContentSource) -> None:
        self._db = database
        self._content = content_source
        self._locks: dict[str, asyncio.Lock] = {}

    def create_variant(
        self,
        variant_type: VariantType,
        target_file: str,
        name: str,
        content: str,
        description: str = "",
        baseline_variant_id: Optional[str] = None,
        source_fix_id: Optional[str] = None,
        created_by: str = "manual",
    ) -> Variant:
        target = canonical_path(target_file)
        digest = content_hash(content)
        existing = self._db.get_variant_by_hash(target, digest)
        if existing is not None:
            logger.info(
                "Variant with identical content already exists for %s: %s",
                target, existing.variant_id,
            )
            return existing

        variant = Variant(
            variant_id=generate_variant_id(variant_type),
            variant_type=variant_type,
            target_file=target,
            name=name,
            description=description,
            content=content,
            content_hash=digest,
            baseline_variant_id=baseline_variant_id,
            source_fix_id=source_fix_id,
            created_by=created_by,
        )
        self._db.insert_variant(variant)
        logger.info("Created variant %s for %s", variant.variant_id, target)
        return variant

    def get_variant(self, variant_id: str) -> Variant:
        variant = self._db.get_variant(variant_id)
        if variant is None:
            raise VariantNotFoundError(variant_id)
        return variant

    def list_variants(self, target_file: Optional[str] = None) -> list[Variant]:
        return self._db.list_variants(canonical_path(target_file) if target_file else None)

    def get_baseline(self, target_file: str) -> Optional[Variant]:
        return self._db.get_baseline_variant(canonical_path(target_file))

    def set_as_baseline(self, variant_id: str) -> Variant:
        if not self._db.set_baseline_variant(variant_id):
            raise VariantNotFoundError(variant_id)
        logger.info("Variant %s is now the baseline", variant_id)
        return self.get_variant(variant_id)

    def capture_baseline(self, target_file: str, variant_type: VariantType) -> Variant:
        """Snapshot the file's current content and make it the baseline if none exists."""
        target = canonical_path(target_file)
        current = self._content.get_content(target)
        variant = self.create_variant(
            variant_type, target, name=f"Baseline ({current.version})",
            content=current.content, description="Captured from current content",
            created_by="baseline-capture",
        )
        if self.get_baseline(target) is None:
            variant = self.set_as_baseline(variant.variant_id)
        return variant

    def _lock_for(self, target: str) -> asyncio.Lock:
        lock = self._locks.get(target)
        if lock is None:
            lock = self._locks[target] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def applied(self, target_file: str, content: str) -> AsyncIterator[None]:
        """Hold the target file with ``content`` applied for the duration of the block.

        Concurrent leases on the same target wait for each other.
        """
        target = canonical_path(target_file)
        async with self._lock_for(target):
            self._content.apply_temporary(target, content)
            try:
                yield
            finally:
                self._content.rollback(target)

    @asynccontextmanager
    async def applied_variant(self, variant_id: str) -> AsyncIterator[Variant]:
        variant = self.get_variant(variant_id)
        async with self.applied(variant.target_file, variant.content):
            yield variant

    def rollback_all(self) -> list[str]:
        """Restore every file that still has temporary content applied."""
        restored = self._content.pending_targets()
        for target in restored:
            self._content.rollback(target)
        if restored:
            logger.warning("Rolled back %d leftover variant(s): %s", len(restored), restored)
        return restored
