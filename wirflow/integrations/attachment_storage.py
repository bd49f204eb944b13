"""
Attachment storage — local filesystem backend for evidence files.

Files are written under ``UPLOAD_FOLDER/<wir_id>/<item_id>/`` and
addressed by a relative ``/uploads/...`` URL. A file that arrives with a
``url`` and no bytes is stored by reference only.
"""

from __future__ import annotations

import logging
import os
import uuid

from flask import current_app
from werkzeug.utils import secure_filename

from wirflow.core.exceptions import TransientIOError

logger = logging.getLogger(__name__)


class LocalAttachmentStorage:
    """Filesystem storage. Pass ``root`` in tests to bypass app config."""

    def __init__(self, root: str | None = None) -> None:
        self._root = root

    @property
    def root(self) -> str:
        return self._root or current_app.config["UPLOAD_FOLDER"]

    def save(self, wir_id: str, item_id: str, filename: str, content: bytes) -> str:
        """Persist bytes and return the URL to reference them by."""
        safe_name = secure_filename(filename or "") or "attachment"
        stored_name = f"{uuid.uuid4().hex[:12]}_{safe_name}"
        folder = os.path.join(self.root, wir_id, item_id)
        try:
            os.makedirs(folder, exist_ok=True)
            with open(os.path.join(folder, stored_name), "wb") as fh:
                fh.write(content)
        except OSError as exc:
            raise TransientIOError(f"Could not store '{filename}': {exc}", filename=filename) from exc
        return f"/uploads/{wir_id}/{item_id}/{stored_name}"

    def remove(self, url: str) -> None:
        """Remove a stored file; URLs outside this storage are ignored."""
        if not url or not url.startswith("/uploads/"):
            return
        path = os.path.join(self.root, *url[len("/uploads/"):].split("/"))
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.info("Attachment file already gone: %s", path)
        except OSError as exc:
            raise TransientIOError(f"Could not remove '{url}': {exc}") from exc


attachment_storage = LocalAttachmentStorage()
