"""Batch operations over many startups' content.

Items run one after another in input order; the LLM is never called
concurrently. Each item runs inside its own SAVEPOINT so a failure rolls back
only that item, is logged, and the loop carries on.

Approving in bulk is two steps: :func:`preview_batch_approve` returns the
eligible ids and a token, and :func:`batch_approve` refuses to touch anything
unless called with ``confirmed=True`` and a token for the same selection.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from evalroom.errors import ValidationError
from evalroom.lifecycle import ContentKey, ContentLifecycleManager, variant_of

log = logging.getLogger(__name__)


@dataclass
class BatchResult:
    success_count: int = 0
    total: int = 0
    skipped: list[int] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success_count": self.success_count, "total": self.total,
            "skipped": self.skipped, "failures": self.failures,
        }


@dataclass
class BatchPreview:
    startup_ids: list[int]
    token: str

    @property
    def count(self) -> int:
        return len(self.startup_ids)

    def to_dict(self) -> dict:
        return {"startup_ids": self.startup_ids, "count": self.count, "token": self.token}


# ---------------------------------------------------------------------------
# Target filters
# ---------------------------------------------------------------------------


def needs_generation(manager: ContentLifecycleManager, key: ContentKey) -> bool:
    record = manager.find(key)
    return record is None or variant_of(record).is_empty


def is_enhanceable(manager: ContentLifecycleManager, key: ContentKey) -> bool:
    record = manager.find(key)
    return record is not None and not variant_of(record).is_empty and not record.is_approved


is_approvable = is_enhanceable


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


async def _run(
    manager: ContentLifecycleManager,
    keys: Sequence[ContentKey],
    eligible: Callable[[ContentLifecycleManager, ContentKey], bool],
    action: Callable[[ContentKey], Awaitable[object]],
    label: str,
) -> BatchResult:
    targets = []
    result = BatchResult()
    for key in keys:
        if eligible(manager, key):
            targets.append(key)
        else:
            result.skipped.append(key.startup_id)
    result.total = len(targets)

    for key in targets:
        try:
            with manager.session.begin_nested():
                await action(key)
            result.success_count += 1
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc)
            log.warning("Batch %s failed for startup %d: %s", label, key.startup_id, message)
            result.failures.append({"startup_id": key.startup_id, "error": message})
    log.info("Batch %s: %d/%d succeeded", label, result.success_count, result.total)
    return result


async def batch_generate(manager: ContentLifecycleManager, keys: Sequence[ContentKey]) -> BatchResult:
    """Generate content for keys that have none (or only the placeholder)."""
    return await _run(manager, keys, needs_generation, manager.generate, "generate")


async def batch_enhance(manager: ContentLifecycleManager, keys: Sequence[ContentKey]) -> BatchResult:
    return await _run(manager, keys, is_enhanceable, manager.enhance, "enhance")


def _selection_token(keys: Sequence[ContentKey]) -> str:
    raw = "|".join(
        f"{k.kind.value}:{k.startup_id}:{k.round_name}:{k.communication_type or ''}" for k in keys
    )
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def preview_batch_approve(manager: ContentLifecycleManager, keys: Sequence[ContentKey]) -> BatchPreview:
    """Dry run: nothing is written."""
    eligible = [k for k in keys if is_approvable(manager, k)]
    return BatchPreview(startup_ids=[k.startup_id for k in eligible], token=_selection_token(eligible))


async def batch_approve(
    manager: ContentLifecycleManager,
    keys: Sequence[ContentKey],
    approver_id: str,
    *,
    token: str | None,
    confirmed: bool,
) -> BatchResult:
    if not confirmed or not token:
        raise ValidationError("Preview the batch and confirm before approving")
    preview = preview_batch_approve(manager, keys)
    if preview.token != token:
        raise ValidationError("The selection changed since the preview; preview again")

    async def approve(key: ContentKey):
        return manager.approve(key, approver_id)

    return await _run(manager, keys, is_approvable, approve, "approve")
