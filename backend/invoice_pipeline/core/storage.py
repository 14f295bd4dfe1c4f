import logging
import mimetypes
import uuid
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Optional, Protocol

from supabase import create_client

from invoice_pipeline.core.config import get_settings
from invoice_pipeline.errors import PipelineError

logger = logging.getLogger(__name__)


class ObjectStoreError(PipelineError):
    pass


class ObjectNotFoundError(ObjectStoreError):
    pass


@dataclass(frozen=True)
class StoredDocument:
    locator: str
    content: bytes
    content_type: str


class ObjectStore(Protocol):
    def put(self, content: bytes, *, filename: Optional[str], content_type: Optional[str]) -> str: ...

    def get(self, locator: str) -> StoredDocument: ...


def _file_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return Path(filename).suffix.lower()


def build_object_path(filename: Optional[str]) -> str:
    token = uuid.uuid4().hex
    ext = _file_extension(filename)
    return f"{token[:2]}/{token}{ext}"


def guess_content_type(locator: str) -> str:
    guessed, _ = mimetypes.guess_type(locator)
    return guessed or "application/octet-stream"


def get_storage_client():
    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise RuntimeError("Supabase storage credentials are not configured")
    return create_client(settings.supabase_url, key)


class SupabaseObjectStore:
    """Invoice documents in a Supabase storage bucket. Locators are ``bucket/path``."""

    def __init__(self, client=None, bucket: Optional[str] = None) -> None:
        self._client = client
        self._bucket = bucket or get_settings().storage_bucket

    def _storage(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client.storage

    def put(self, content: bytes, *, filename: Optional[str], content_type: Optional[str]) -> str:
        path = build_object_path(filename)
        options = {"content-type": content_type} if content_type else None
        try:
            result = self._storage().from_(self._bucket).upload(path, content, options)
        except Exception as exc:
            raise ObjectStoreError(f"Upload failed for {path}") from exc
        error = result.get("error") if isinstance(result, dict) else getattr(result, "error", None)
        if error:
            raise ObjectStoreError(f"Upload failed for {path}: {error}")
        return f"{self._bucket}/{path}"

    def get(self, locator: str) -> StoredDocument:
        bucket, _, path = locator.partition("/")
        if not path:
            raise ObjectNotFoundError(f"Malformed locator: {locator}")
        try:
            content = self._storage().from_(bucket).download(path)
        except Exception as exc:
            message = str(exc).lower()
            if "not found" in message or "404" in message:
                raise ObjectNotFoundError(f"Document not found: {locator}") from exc
            raise ObjectStoreError(f"Download failed for {locator}") from exc
        return StoredDocument(locator=locator, content=content, content_type=guess_content_type(path))


class InMemoryObjectStore:
    """Process-local store for development and tests."""

    def __init__(self, bucket: str = "invoices") -> None:
        self._bucket = bucket
        self._objects: dict[str, StoredDocument] = {}
        self._lock = Lock()

    def put(self, content: bytes, *, filename: Optional[str], content_type: Optional[str]) -> str:
        locator = f"{self._bucket}/{build_object_path(filename)}"
        document = StoredDocument(
            locator=locator,
            content=content,
            content_type=content_type or guess_content_type(locator),
        )
        with self._lock:
            self._objects[locator] = document
        return locator

    def get(self, locator: str) -> StoredDocument:
        with self._lock:
            document = self._objects.get(locator)
        if document is None:
            raise ObjectNotFoundError(f"Document not found: {locator}")
        return document


@lru_cache
def get_object_store() -> ObjectStore:
    """Process-wide store; uploads to the in-memory fallback stay readable by later runs."""
    settings = get_settings()
    if settings.supabase_url:
        return SupabaseObjectStore()
    logger.warning("SUPABASE_URL not set - using in-memory object store")
    return InMemoryObjectStore(settings.storage_bucket)
