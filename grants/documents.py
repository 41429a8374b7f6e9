"""
Receipt document storage.

Uploads are stored before a claim is submitted, outside any balance lock; the
claim only carries the returned ``ReceiptAttachment.ref``.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

from .exceptions import UploadRejectedError
from .logging_config import get_logger
from .models import ReceiptAttachment
from .validator import is_recognized_receipt

logger = get_logger(__name__)

PDF_MAGIC = b"%PDF-"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024


class DocumentStore(ABC):

    @abstractmethod
    def store(
        self, owner_id: UUID, filename: str, content_type: Optional[str], data: bytes
    ) -> ReceiptAttachment:
        """Persist ``data`` and return an attachment whose ``ref`` locates it."""
        ...

    @abstractmethod
    def exists(self, owner_id: UUID, ref: str) -> bool:
        """Whether ``ref`` was issued by this store for ``owner_id`` and is still held."""
        ...


class LocalDocumentStore(DocumentStore):
    def __init__(self, root: Path, max_bytes: int = DEFAULT_MAX_BYTES):
        self.root = Path(root)
        self.max_bytes = max_bytes

    def store(
        self, owner_id: UUID, filename: str, content_type: Optional[str], data: bytes
    ) -> ReceiptAttachment:
        if not data:
            raise UploadRejectedError("file is empty", filename=filename)
        if len(data) > self.max_bytes:
            raise UploadRejectedError(
                f"file exceeds {self.max_bytes} bytes", filename=filename
            )
        if not is_recognized_receipt(content_type, filename):
            raise UploadRejectedError("only PDF files are allowed", filename=filename)
        if not data.startswith(PDF_MAGIC):
            raise UploadRejectedError("file content is not a PDF document", filename=filename)

        self.root.mkdir(parents=True, exist_ok=True)
        stored_name = f"{owner_id}-{uuid4().hex}.pdf"
        path = self.root / stored_name
        try:
            path.write_bytes(data)
        except OSError as e:
            logger.error("receipt_write_failed", path=str(path), error=str(e))
            raise UploadRejectedError("receipt could not be stored", filename=filename) from e

        logger.info("receipt_stored", owner_id=str(owner_id), ref=stored_name, size_bytes=len(data))
        return ReceiptAttachment(
            ref=stored_name,
            filename=filename,
            content_type="application/pdf",
            size_bytes=len(data),
        )

    def exists(self, owner_id: UUID, ref: str) -> bool:
        if not ref.startswith(f"{owner_id}-"):
            return False
        try:
            return self.path_for(ref).is_file()
        except UploadRejectedError:
            return False

    def path_for(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if path.parent != self.root.resolve():
            raise UploadRejectedError("invalid receipt reference", filename=ref)
        return path
