from __future__ import annotations

from typing import Optional, Tuple
from urllib.parse import quote

import gridfs
from gridfs.errors import NoFile
from pymongo.database import Database

from . import config


INVOICE_PREFIX = "invoices"


class BlobStore:
    """Binary files kept in GridFS, retrievable through the API's /invoices route."""

    def __init__(self, bucket, base_url: Optional[str] = None):
        self._bucket = bucket
        self._base_url = (base_url or config.public_base_url()).rstrip("/")

    @classmethod
    def for_database(cls, db: Database, base_url: Optional[str] = None) -> "BlobStore":
        return cls(gridfs.GridFSBucket(db, bucket_name=INVOICE_PREFIX), base_url=base_url)

    def url_for(self, filename: str) -> str:
        return f"{self._base_url}/{INVOICE_PREFIX}/{quote(filename)}"

    def put_bytes(self, *, key: str, data: bytes, content_type: str) -> str:
        name = (key or "").strip()
        if not name:
            raise ValueError("Blob key is required.")
        self._bucket.upload_from_stream(
            name,
            data or b"",
            metadata={"contentType": content_type or "application/octet-stream"},
        )
        return self.url_for(name)

    def get_bytes(self, key: str) -> Optional[Tuple[bytes, str]]:
        try:
            stream = self._bucket.open_download_stream_by_name(key)
        except NoFile:
            return None
        metadata = getattr(stream, "metadata", None) or {}
        return stream.read(), metadata.get("contentType", "application/octet-stream")
