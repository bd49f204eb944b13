"""
Tests: SQL persistence gateway and local attachment storage.

Covers code generation, draft visibility, attachment cap re-check,
error mapping and file storage round-trip.
"""

import os

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from wirflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from wirflow.integrations.attachment_storage import LocalAttachmentStorage
from wirflow.models import db as _db
from wirflow.models.wir import WirEvidence, WirRecord


def _files(*names):
    return [{"kind": "photo", "filename": n, "content": b"img"} for n in names]


def test_next_code_counts_per_project(gateway):
    _db.session.add(WirRecord(project_id="P1", code="WIR-0007", creator_id="C1"))
    _db.session.add(WirRecord(project_id="P2", code="WIR-0042", creator_id="C1"))
    _db.session.commit()

    assert gateway.next_code("P1") == "WIR-0008"
    assert gateway.next_code("P3") == "WIR-0001"


def test_get_is_project_scoped(wirs, gateway):
    record = wirs.draft()
    assert gateway.get(record.id, "P1").id == record.id
    with pytest.raises(NotFoundError):
        gateway.get(record.id, "P2")
    with pytest.raises(NotFoundError):
        gateway.get("missing")


def test_upload_writes_file_and_row(wirs, gateway, tmp_path):
    record = wirs.submitted()
    item = record.items[0]

    refs = gateway.upload_attachments(record.id, item.id, _files("slab 1.jpg"), uploaded_by="U1")

    assert len(refs) == 1
    ref = refs[0]
    assert ref["url"].startswith(f"/uploads/{record.id}/{item.id}/")
    assert ref["url"].endswith("slab_1.jpg")
    assert ref["uploaded_by"] == "U1"
    stored = os.path.join(str(tmp_path), *ref["url"][len("/uploads/"):].split("/"))
    with open(stored, "rb") as fh:
        assert fh.read() == b"img"
    assert gateway.list_attachments(record.id, item.id) == refs


def test_upload_by_reference(wirs, gateway):
    record = wirs.submitted()
    item = record.items[0]
    refs = gateway.upload_attachments(
        record.id, item.id, [{"kind": "document", "filename": "cert.pdf", "url": "https://dms/cert.pdf"}],
    )
    assert refs[0]["url"] == "https://dms/cert.pdf"


def test_upload_cap_rechecked_by_store(wirs, gateway):
    record = wirs.submitted()
    item = record.items[0]
    gateway.upload_attachments(record.id, item.id, _files("1", "2", "3", "4"))

    with pytest.raises(ValidationError):
        gateway.upload_attachments(record.id, item.id, _files("5", "6"))

    # The fifth file was committed before the sixth was refused.
    assert WirEvidence.query.filter_by(item_id=item.id).count() == 5


def test_upload_to_foreign_item_refused(wirs, gateway):
    one = wirs.submitted()
    two = wirs.submitted()
    with pytest.raises(NotFoundError):
        gateway.upload_attachments(one.id, two.items[0].id, _files("x.jpg"))


def test_delete_attachment_removes_file(wirs, gateway, tmp_path):
    record = wirs.submitted()
    item = record.items[0]
    ref = gateway.upload_attachments(record.id, item.id, _files("a.jpg"))[0]
    path = os.path.join(str(tmp_path), *ref["url"][len("/uploads/"):].split("/"))
    assert os.path.exists(path)

    gateway.delete_attachment(record.id, ref["id"])

    assert not os.path.exists(path)
    assert gateway.list_attachments(record.id) == []
    with pytest.raises(NotFoundError):
        gateway.delete_attachment(record.id, ref["id"])


def test_has_later_version(wirs, gateway):
    parent = wirs.approved()
    assert gateway.has_later_version(parent) is False
    _db.session.add(WirRecord(project_id="P1", code=parent.code, version=2, creator_id="C1", is_follow_up=True))
    _db.session.commit()
    assert gateway.has_later_version(parent) is True


def test_patch_unknown_item_leaves_record_untouched(wirs, gateway):
    record = wirs.submitted()
    token = record.row_version
    with pytest.raises(NotFoundError):
        gateway.patch(record.id, {"location": "moved"}, item_updates={"ghost": {"inspector_status": "PASS"}})
    _db.session.expire_all()
    fresh = _db.session.get(WirRecord, record.id)
    assert fresh.location != "moved"
    assert fresh.row_version == token


def test_patch_stale_token(wirs, gateway):
    record = wirs.draft()
    with pytest.raises(ConflictError) as exc_info:
        gateway.patch(record.id, {"location": "x"}, expected_row_version=record.row_version + 5)
    assert exc_info.value.expected == record.row_version + 5


@pytest.mark.parametrize("raised, mapped", [
    (OperationalError("UPDATE", {}, Exception("connection reset")), TransientIOError),
    (IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed")), ValidationError),
])
def test_commit_error_mapping(wirs, gateway, monkeypatch, raised, mapped):
    record = wirs.draft()

    def failing_commit():
        raise raised

    monkeypatch.setattr(_db.session, "commit", failing_commit)
    with pytest.raises(mapped):
        gateway.append_history(record.id, {"action": "Updated", "actor_id": "C1"})


def test_storage_remove_ignores_foreign_urls(tmp_path):
    storage = LocalAttachmentStorage(root=str(tmp_path))
    storage.remove("https://elsewhere/file.jpg")
    storage.remove("/uploads/w/i/never-written.jpg")


def test_storage_save_failure_is_transient(tmp_path):
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory")
    storage = LocalAttachmentStorage(root=str(blocker))
    with pytest.raises(TransientIOError) as exc_info:
        storage.save("w", "i", "a.jpg", b"x")
    assert exc_info.value.filename == "a.jpg"


def test_duplicate_root_code_rejected(gateway):
    gateway.create(WirRecord(project_id="P1", code="WIR-0001", creator_id="C1"))

    with pytest.raises(ValidationError):
        gateway.create(WirRecord(project_id="P1", code="WIR-0001", creator_id="C2"))

    # The failed insert was rolled back and the session stays usable.
    assert WirRecord.query.filter_by(project_id="P1").count() == 1
    assert gateway.create(WirRecord(project_id="P2", code="WIR-0001", creator_id="C2"))


def test_generated_code_retried_after_collision(gateway, monkeypatch):
    gateway.create(WirRecord(project_id="P1", code="WIR-0001", creator_id="C1"))
    # A concurrent writer read the same max before our insert landed.
    codes = iter(["WIR-0001", "WIR-0002"])
    monkeypatch.setattr(gateway, "next_code", lambda project_id: next(codes))

    record_id = gateway.create(WirRecord(project_id="P1", creator_id="C2"))

    assert _db.session.get(WirRecord, record_id).code == "WIR-0002"
    assert WirRecord.query.filter_by(project_id="P1").count() == 2


def test_generated_code_gives_up_after_retries(gateway, monkeypatch):
    gateway.create(WirRecord(project_id="P1", code="WIR-0001", creator_id="C1"))
    monkeypatch.setattr(gateway, "next_code", lambda project_id: "WIR-0001")

    with pytest.raises(ValidationError):
        gateway.create(WirRecord(project_id="P1", creator_id="C2"))


def test_duplicate_follow_up_version_rejected(wirs, gateway):
    parent = wirs.approved()
    gateway.create(WirRecord(project_id="P1", code=parent.code, version=2, creator_id="C1", is_follow_up=True))

    with pytest.raises(ValidationError):
        gateway.create(WirRecord(project_id="P1", code=parent.code, version=2, creator_id="C1", is_follow_up=True))


def test_create_flush_failure_is_mapped(gateway, monkeypatch):
    def failing_flush(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(_db.session, "flush", failing_flush)
    with pytest.raises(TransientIOError):
        gateway.create(WirRecord(project_id="P1", code="WIR-0001", creator_id="C1"))
