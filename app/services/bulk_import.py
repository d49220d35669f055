"""Bulk import of report PDFs from a list of URLs.

Downloads run concurrently in batches (blocking ``requests`` calls in threads);
registration is sequential because one AsyncSession is not safe to share
between tasks. Each URL gets its own result and one bad URL never fails the batch.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, List, Optional
from urllib.parse import unquote, urlparse

import requests
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import BadRequestError, ConflictError
from app.services import documents
from app.services.document_store import GcsDocumentStore, content_hash

logger = logging.getLogger(__name__)

BATCH_SIZE = 5
MAX_URLS = 100
DOWNLOAD_TIMEOUT_SECONDS = 30
USER_AGENT = "Mozilla/5.0 (compatible; PDFImporter/1.0)"


class ImportRejected(ValueError):
    """The URL was reachable but did not yield an acceptable PDF."""


@dataclass
class ImportResult:
    url: str
    status: str  # success | error
    document_id: Optional[str] = None
    file_name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def file_name_from_url(url: str) -> str:
    name = unquote(urlparse(url).path.rsplit("/", 1)[-1]) or "document.pdf"
    return name if name.endswith(".pdf") else f"{name}.pdf"


def fetch_pdf(url: str, max_bytes: int) -> bytes:
    """Download *url* and check it is a PDF no larger than *max_bytes*. Blocking."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ImportRejected("Invalid URL format")

    with requests.get(
        url, headers={"User-Agent": USER_AGENT}, timeout=DOWNLOAD_TIMEOUT_SECONDS, stream=True
    ) as response:
        if not response.ok:
            raise ImportRejected(f"HTTP {response.status_code}: {response.reason}")
        if "pdf" not in (response.headers.get("content-type") or ""):
            raise ImportRejected("Not a PDF file (invalid content-type)")
        too_large = f"File too large (max {max_bytes // (1024 * 1024)}MB)"
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise ImportRejected(too_large)

        contents = bytearray()
        for chunk in response.iter_content(chunk_size=64 * 1024):
            contents.extend(chunk)
            if len(contents) > max_bytes:
                raise ImportRejected(too_large)

    if not bytes(contents[:4]).startswith(b"%PDF"):
        raise ImportRejected("Invalid PDF file format")
    return bytes(contents)


async def _register(
    db: AsyncSession,
    store: GcsDocumentStore,
    url: str,
    contents: bytes,
    uploaded_by: str,
) -> ImportResult:
    if await documents.find_by_hash(db, content_hash(contents)) is not None:
        return ImportResult(url=url, status="error", error="Duplicate file (already exists in database)")

    file_name = file_name_from_url(url)
    stored = await store.upload(contents, file_name, "application/pdf")
    try:
        document = await documents.register_document(
            db,
            file_name=file_name,
            file_path=stored.path,
            file_hash=stored.content_hash,
            uploaded_by=uploaded_by,
        )
        await db.commit()
    except ConflictError as exc:
        await db.rollback()
        return ImportResult(url=url, status="error", error=exc.message)
    return ImportResult(url=url, status="success", document_id=str(document.id), file_name=file_name)


async def bulk_import(
    db: AsyncSession,
    store: GcsDocumentStore,
    urls: List[Any],
    uploaded_by: str,
    *,
    max_bytes: int,
) -> dict:
    """Import every URL; returns ``{"results": [...], "summary": {total, successful, failed}}``."""
    if not urls:
        raise BadRequestError("No URLs provided")
    if len(urls) > MAX_URLS:
        raise BadRequestError(f"Too many URLs (max {MAX_URLS})")
    cleaned = [u.strip() for u in urls if isinstance(u, str) and u.strip()]

    results: List[ImportResult] = []
    for start in range(0, len(cleaned), BATCH_SIZE):
        batch = cleaned[start:start + BATCH_SIZE]
        downloads = await asyncio.gather(
            *(asyncio.to_thread(fetch_pdf, url, max_bytes) for url in batch),
            return_exceptions=True,
        )
        for url, outcome in zip(batch, downloads):
            if isinstance(outcome, ImportRejected):
                results.append(ImportResult(url=url, status="error", error=str(outcome)))
                continue
            if isinstance(outcome, requests.Timeout):
                results.append(ImportResult(url=url, status="error", error="Download timeout exceeded"))
                continue
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning("[import] Download failed for %s: %s", url, outcome)
                results.append(ImportResult(url=url, status="error", error=str(outcome) or type(outcome).__name__))
                continue
            results.append(await _register(db, store, url, outcome, uploaded_by))

    successful = sum(1 for r in results if r.status == "success")
    logger.info("[import] Bulk import by %s: %d of %d succeeded", uploaded_by, successful, len(results))
    return {
        "results": [r.to_dict() for r in results],
        "summary": {"total": len(results), "successful": successful, "failed": len(results) - successful},
    }
