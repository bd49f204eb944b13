"""
WIR Evidence Store — per-item attachment cap with stage / commit discipline.

One store instance belongs to one caller session working on one record.
It holds two views per item:
    persisted  — attachment refs the backing store has confirmed
    staged     — files picked by the caller but not yet uploaded

Rules:
    - persisted + staged never exceeds the cap (5); the attempt that would
      exceed it is rejected and nothing already held is dropped
    - ``commit`` uploads staged files one at a time and stops at the first
      failure; files uploaded before the failure stay persisted, the failed
      file and the ones after it stay staged for a retry
    - ``delete`` removes the ref locally first, then confirms with the
      gateway; on failure the item is reloaded from the backing store

Usage:
    store = EvidenceStore.for_record(record)
    store.stage(item_id, kind="photo", filename="slab.jpg", content=data)
    store.commit(gateway, uploaded_by=actor_id)   # right before the transition
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app, has_app_context

from wirflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from wirflow.models.wir import EVIDENCE_KINDS

logger = logging.getLogger(__name__)

DEFAULT_EVIDENCE_CAP = 5


def _configured_cap() -> int:
    if has_app_context():
        return int(current_app.config.get("WIR_EVIDENCE_CAP", DEFAULT_EVIDENCE_CAP))
    return DEFAULT_EVIDENCE_CAP


@dataclass
class StagedFile:
    """A file picked for upload but not yet committed."""
    item_id: str
    kind: str
    filename: str
    content: bytes | None = None
    url: str | None = None
    staged_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_upload(self) -> dict:
        return {"kind": self.kind, "filename": self.filename, "content": self.content, "url": self.url}


class EvidenceStore:
    """Attachment staging area for one record."""

    def __init__(self, wir_id: str, persisted: dict[str, list[dict]] | None = None, cap: int | None = None) -> None:
        self.wir_id = wir_id
        self.cap = cap or _configured_cap()
        self._persisted: dict[str, list[dict]] = {k: list(v) for k, v in (persisted or {}).items()}
        self._staged: dict[str, list[StagedFile]] = {}

    @classmethod
    def for_record(cls, record, cap: int | None = None) -> "EvidenceStore":
        persisted = {it.id: [e.to_dict() for e in it.evidences] for it in record.items}
        return cls(record.id, persisted=persisted, cap=cap)

    # ── Views ────────────────────────────────────────────────────────────────

    def persisted(self, item_id: str) -> list[dict]:
        return list(self._persisted.get(item_id, []))

    def staged(self, item_id: str) -> list[StagedFile]:
        return list(self._staged.get(item_id, []))

    def count(self, item_id: str) -> int:
        return len(self._persisted.get(item_id, [])) + len(self._staged.get(item_id, []))

    def staged_counts(self) -> dict[str, int]:
        return {item_id: len(files) for item_id, files in self._staged.items() if files}

    @property
    def has_staged(self) -> bool:
        return any(self._staged.values())

    # ── Staging ──────────────────────────────────────────────────────────────

    def stage(
        self,
        item_id: str,
        *,
        filename: str,
        kind: str = "photo",
        content: bytes | None = None,
        url: str | None = None,
    ) -> StagedFile:
        if kind not in EVIDENCE_KINDS:
            raise ValidationError(f"Unknown evidence kind '{kind}'", details={"kind": kind})
        if content is None and not url:
            raise ValidationError("Attachment needs content or a url", details={"filename": filename})
        if self.count(item_id) >= self.cap:
            raise ValidationError(
                f"Item already holds {self.count(item_id)} attachments (max {self.cap})",
                details={"item_id": item_id, "filename": filename},
            )
        staged = StagedFile(item_id=item_id, kind=kind, filename=filename, content=content, url=url)
        self._staged.setdefault(item_id, []).append(staged)
        return staged

    def unstage(self, item_id: str, filename: str) -> bool:
        files = self._staged.get(item_id, [])
        for idx, f in enumerate(files):
            if f.filename == filename:
                del files[idx]
                return True
        return False

    # ── Commit ───────────────────────────────────────────────────────────────

    def commit(self, gateway, uploaded_by: str | None = None) -> list[dict]:
        """Upload every staged file sequentially; stop at the first failure.

        Returns the refs committed by this call. Raises the failing file's
        error (TransientIOError for storage/network, ValidationError from the
        store verbatim); earlier uploads are kept either way.
        """
        committed: list[dict] = []
        for item_id in list(self._staged):
            queue = self._staged[item_id]
            while queue:
                staged = queue[0]
                try:
                    refs = gateway.upload_attachments(self.wir_id, item_id, [staged.to_upload()], uploaded_by=uploaded_by)
                except (TransientIOError, ValidationError, ConflictError, NotFoundError):
                    logger.warning(
                        "Evidence upload stopped at '%s' after %d committed file(s)",
                        staged.filename, len(committed),
                        extra={"wir_id": self.wir_id},
                    )
                    raise
                except Exception as exc:
                    logger.warning("Evidence upload failed for '%s'", staged.filename, exc_info=True,
                                   extra={"wir_id": self.wir_id})
                    raise TransientIOError(f"Upload of '{staged.filename}' failed", filename=staged.filename) from exc
                queue.pop(0)
                self._persisted.setdefault(item_id, []).extend(refs)
                committed.extend(refs)
            del self._staged[item_id]
        return committed

    # ── Delete ───────────────────────────────────────────────────────────────

    def delete(self, gateway, attachment_id: str) -> None:
        """Optimistically drop an attachment; restore authoritative state on failure."""
        item_id = None
        for iid, refs in self._persisted.items():
            if any(r["id"] == attachment_id for r in refs):
                item_id = iid
                break
        if item_id is None:
            raise NotFoundError(resource="WirEvidence", resource_id=attachment_id)

        self._persisted[item_id] = [r for r in self._persisted[item_id] if r["id"] != attachment_id]
        try:
            gateway.delete_attachment(self.wir_id, attachment_id)
        except Exception:
            logger.warning("Attachment delete not confirmed; reloading item %s", item_id,
                           extra={"wir_id": self.wir_id})
            self.reload(gateway, item_id)
            raise

    def reload(self, gateway, item_id: str) -> None:
        """Replace the local persisted view of an item with the store's."""
        self._persisted[item_id] = gateway.list_attachments(self.wir_id, item_id)
