"""
Persistence gateway — the engine's only path to the backing store.

All writes for one engine action go through a single ``commit`` so an
action is either fully persisted or not at all. Error mapping:

    StaleDataError / row_version mismatch -> ConflictError   (re-read, retry)
    IntegrityError                        -> ValidationError (store rule, verbatim)
    OperationalError / other DBAPIError   -> TransientIOError (retryable)

Every record UPDATE is guarded by SQLAlchemy's ``version_id_col``
(``WirRecord.row_version``); callers may also pass the token they read as
``expected_row_version`` to reject a write made from a stale snapshot.

Testability: the engine takes ``gateway=`` everywhere; tests pass a
subclass that fails on demand instead of patching SQLAlchemy.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from wirflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from wirflow.integrations.attachment_storage import attachment_storage
from wirflow.models import db
from wirflow.models.wir import (
    WirChecklistSelection,
    WirDiscussion,
    WirEvidence,
    WirHistory,
    WirItem,
    WirItemRun,
    WirRecord,
)

logger = logging.getLogger(__name__)

CODE_PREFIX = "WIR-"
CODE_RETRIES = 3


def _utcnow():
    return datetime.now(timezone.utc)


def _history_row(wir_id: str, entry: dict) -> WirHistory:
    return WirHistory(
        wir_id=wir_id,
        action=entry["action"],
        actor_id=entry.get("actor_id"),
        from_status=entry.get("from_status"),
        to_status=entry.get("to_status"),
        from_bic=entry.get("from_bic"),
        to_bic=entry.get("to_bic"),
        notes=entry.get("notes"),
        meta_json=json.dumps(entry.get("meta") or {}, default=str),
    )


class SqlPersistenceGateway:
    """SQLAlchemy-backed PersistenceGateway."""

    def __init__(self, storage=None, evidence_cap: int = 5) -> None:
        self._storage = storage
        self.evidence_cap = evidence_cap

    @property
    def storage(self):
        return self._storage or attachment_storage

    # ── Commit / error mapping ───────────────────────────────────────────────

    @contextmanager
    def _mapped_errors(self, resource: str, resource_id: str | None):
        """Roll back and translate store errors raised inside the block."""
        try:
            yield
        except StaleDataError as exc:
            db.session.rollback()
            logger.info("Stale write rejected for %s %s", resource, resource_id)
            raise ConflictError(resource, resource_id) from exc
        except IntegrityError as exc:
            db.session.rollback()
            raise ValidationError(f"{resource} rejected by the backing store: {exc.orig}") from exc
        except (OperationalError, DBAPIError) as exc:
            db.session.rollback()
            logger.warning("Backing store failure for %s %s", resource, resource_id, exc_info=True)
            raise TransientIOError(f"Backing store unavailable while writing {resource}") from exc

    def _commit(self, resource: str, resource_id: str | None) -> None:
        with self._mapped_errors(resource, resource_id):
            db.session.commit()

    def _check_token(self, record: WirRecord, expected_row_version: int | None) -> None:
        if expected_row_version is not None and record.row_version != expected_row_version:
            raise ConflictError("WirRecord", record.id, expected=expected_row_version, actual=record.row_version)

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, wir_id: str, project_id: str | None = None) -> WirRecord:
        record = db.session.get(WirRecord, wir_id)
        if record is None or (project_id is not None and record.project_id != project_id):
            raise NotFoundError(resource="WirRecord", resource_id=wir_id, project_id=project_id)
        return record

    def list_records(self, project_id: str, visible_to: str | None = None, status: str | None = None) -> list[WirRecord]:
        """Drafts are only listed for their creator."""
        stmt = select(WirRecord).where(WirRecord.project_id == project_id)
        if status:
            stmt = stmt.where(WirRecord.status == status)
        stmt = stmt.where(
            (WirRecord.status != "Draft") | (WirRecord.creator_id == visible_to)
        )
        return list(db.session.execute(stmt.order_by(WirRecord.created_at.desc())).scalars().all())

    def has_later_version(self, record: WirRecord) -> bool:
        """True if a record with the same code and a higher version exists."""
        count = db.session.execute(
            select(func.count(WirRecord.id)).where(
                WirRecord.project_id == record.project_id,
                WirRecord.code == record.code,
                WirRecord.version > (record.version or 0),
            )
        ).scalar()
        return bool(count)

    def list_attachments(self, wir_id: str, item_id: str | None = None) -> list[dict]:
        stmt = select(WirEvidence).where(WirEvidence.wir_id == wir_id)
        if item_id:
            stmt = stmt.where(WirEvidence.item_id == item_id)
        rows = db.session.execute(stmt.order_by(WirEvidence.created_at)).scalars().all()
        return [e.to_dict() for e in rows]

    # ── Writes ───────────────────────────────────────────────────────────────

    def next_code(self, project_id: str) -> str:
        """Next sequential WIR-NNNN code for the project.

        The project's existing rows are read FOR UPDATE where the backend
        supports it; a concurrent insert that still collides is caught by
        the ``uq_wir_root_code`` index and retried in ``create``.
        """
        codes = db.session.execute(
            select(WirRecord.code)
            .where(
                WirRecord.project_id == project_id,
                WirRecord.code.like(f"{CODE_PREFIX}%"),
            )
            .with_for_update()
        ).scalars().all()
        last = 0
        for code in codes:
            try:
                last = max(last, int(code[len(CODE_PREFIX):]))
            except ValueError:
                continue
        return f"{CODE_PREFIX}{last + 1:04d}"

    def create(
        self,
        record: WirRecord,
        *,
        history: dict | None = None,
        linked: tuple[str, dict, int | None] | None = None,
    ) -> str:
        """Insert a record (and its items) with its first history entry.

        ``linked`` = (other_record_id, history_entry, expected_row_version)
        writes a history entry on another record in the same commit and
        bumps that record's row_version, so racing writers conflict.
        """
        other = None
        if linked:
            other_id, other_entry, expected = linked
            other = self.get(other_id)
            self._check_token(other, expected)

        generated = not record.code
        for attempt in range(1, CODE_RETRIES + 1):
            if generated:
                record.code = self.next_code(record.project_id)
            try:
                with self._mapped_errors("WirRecord", record.id):
                    db.session.add(record)
                    db.session.flush()
                    if history:
                        db.session.add(_history_row(record.id, history))
                    if other is not None:
                        other.updated_at = _utcnow()
                        db.session.add(_history_row(other.id, other_entry))
                    db.session.commit()
                return record.id
            except ValidationError:
                if not generated or attempt == CODE_RETRIES:
                    raise
                logger.info("Code %s taken in project %s, retrying", record.code, record.project_id)
                if other is not None:
                    other = self.get(other.id)
                    self._check_token(other, expected)
        raise AssertionError("unreachable")

    def patch(
        self,
        wir_id: str,
        partial_header: dict,
        *,
        expected_row_version: int | None = None,
        history: dict | None = None,
        new_items: list[WirItem] | None = None,
        runs: list[WirItemRun] | None = None,
        item_updates: dict[str, dict] | None = None,
        selections: list[str] | None = None,
    ) -> WirRecord:
        """Apply one engine action's writes atomically and return the record.

        Args:
            partial_header: column -> value for WirRecord.
            new_items: WirItem rows to attach (dispatch materialization).
            runs: WirItemRun rows to append.
            item_updates: item_id -> {column: value} mirrors of the latest run.
            selections: replacement checklist id list (Draft patch).
        """
        record = self.get(wir_id)
        self._check_token(record, expected_row_version)
        by_id = {it.id: it for it in record.items}
        for item_id in item_updates or {}:
            if item_id not in by_id:
                raise NotFoundError(resource="WirItem", resource_id=item_id)

        for field, value in partial_header.items():
            setattr(record, field, value)
        # Always UPDATE the header row so the row_version guard applies.
        record.updated_at = _utcnow()

        if selections is not None:
            record.checklist_selections = [
                WirChecklistSelection(checklist_id=cid) for cid in dict.fromkeys(selections)
            ]
        for item in new_items or []:
            record.items.append(item)
        for item_id, changes in (item_updates or {}).items():
            for field, value in changes.items():
                setattr(by_id[item_id], field, value)
        for run in runs or []:
            run.wir_id = record.id
            db.session.add(run)
        if history:
            db.session.add(_history_row(record.id, history))

        self._commit("WirRecord", wir_id)
        return record

    def append_history(self, wir_id: str, entry: dict) -> None:
        db.session.add(_history_row(wir_id, entry))
        self._commit("WirHistory", wir_id)

    def delete(self, wir_id: str) -> None:
        record = self.get(wir_id)
        urls = [e.url for it in record.items for e in it.evidences]
        db.session.delete(record)
        self._commit("WirRecord", wir_id)
        for url in urls:
            try:
                self.storage.remove(url)
            except TransientIOError:
                logger.warning("Orphaned attachment after draft delete: %s", url)

    def upload_attachments(
        self,
        wir_id: str,
        item_id: str,
        files: list[dict],
        uploaded_by: str | None = None,
    ) -> list[dict]:
        """Store files one at a time; stop at the first failure.

        Each file is committed on its own so files uploaded before a
        failure remain valid. The per-item cap is re-checked here against
        the committed count (store-side validation).

        Each file: {kind, filename, content: bytes | None, url: str | None}.
        """
        item = db.session.get(WirItem, item_id)
        if item is None or item.wir_id != wir_id:
            raise NotFoundError(resource="WirItem", resource_id=item_id)

        refs = []
        for f in files:
            existing = db.session.execute(
                select(func.count(WirEvidence.id)).where(WirEvidence.item_id == item_id)
            ).scalar() or 0
            if existing >= self.evidence_cap:
                raise ValidationError(
                    f"Item {item.code or item_id} already has {existing} attachments (max {self.evidence_cap})",
                    details={"item_id": item_id, "filename": f.get("filename")},
                )
            url = f.get("url")
            if f.get("content") is not None:
                url = self.storage.save(wir_id, item_id, f.get("filename") or "attachment", f["content"])
            if not url:
                raise ValidationError("Attachment needs content or a url", details={"filename": f.get("filename")})
            evidence = WirEvidence(
                wir_id=wir_id,
                item_id=item_id,
                kind=f.get("kind") or "photo",
                url=url,
                filename=f.get("filename"),
                uploaded_by=uploaded_by,
            )
            db.session.add(evidence)
            self._commit("WirEvidence", item_id)
            refs.append(evidence.to_dict())
        return refs

    def delete_attachment(self, wir_id: str, attachment_id: str) -> None:
        evidence = db.session.get(WirEvidence, attachment_id)
        if evidence is None or evidence.wir_id != wir_id:
            raise NotFoundError(resource="WirEvidence", resource_id=attachment_id)
        url = evidence.url
        db.session.delete(evidence)
        self._commit("WirEvidence", attachment_id)
        try:
            self.storage.remove(url)
        except TransientIOError:
            logger.warning("Attachment row deleted but file removal failed: %s", url)

    # ── Discussions ──────────────────────────────────────────────────────────

    def list_discussions(self, wir_id: str) -> list[WirDiscussion]:
        return db.session.execute(
            select(WirDiscussion)
            .where(WirDiscussion.wir_id == wir_id, WirDiscussion.deleted_at.is_(None))
            .order_by(WirDiscussion.created_at)
        ).scalars().all()

    def get_discussion(self, wir_id: str, discussion_id: str) -> WirDiscussion:
        """Live (not soft-deleted) comment on the given record."""
        row = db.session.get(WirDiscussion, discussion_id)
        if row is None or row.wir_id != wir_id or row.is_deleted:
            raise NotFoundError(resource="WirDiscussion", resource_id=discussion_id)
        return row

    def save_discussion(self, discussion: WirDiscussion, history: dict | None = None) -> WirDiscussion:
        """Insert or update a comment together with its history entry."""
        with self._mapped_errors("WirDiscussion", discussion.id):
            db.session.add(discussion)
            db.session.flush()
            if history:
                db.session.add(_history_row(discussion.wir_id, history))
            db.session.commit()
        return discussion


persistence_gateway = SqlPersistenceGateway()
