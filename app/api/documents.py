# =============================================================================
# Documents API — Corpus Maintenance
# =============================================================================
#
#   POST   /documents                    upload, queue ingestion (202)
#   DELETE /documents/{id}               document + every chunk of it
#   PATCH  /documents/{id}               retag document and its chunks
#   GET    /entities/{entity_id}/corpus  per-entity corpus statistics
#
# The ingestion pipeline and its tracker are synchronous (they are shared
# with the Celery worker), so handlers hand them to a worker thread.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.engine import get_async_session
from app.db.models import Document, DocumentStatus, SourceCategory
from app.exceptions import DocumentNotFoundError
from app.models.requests import DocumentMetadataUpdate
from app.models.responses import (
    CorpusStatsResponse,
    DocumentDeletedResponse,
    DocumentTagsResponse,
    IngestResponse,
)
from app.services.ingestion import IngestionPipeline, get_entity_corpus_stats
from app.services.parser import SUPPORTED_SUFFIXES
from app.services.vectorstore import get_vector_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Documents"])


def get_pipeline() -> IngestionPipeline:
    return IngestionPipeline(get_vector_store())


@router.post(
    "/documents",
    response_model=IngestResponse,
    status_code=202,
    summary="Upload a document into the retrieval corpus",
    description=(
        "Saves the file, creates a PENDING document and queues ingestion. "
        "Omit entity_id to add the document to the global corpus."
    ),
)
async def upload_document(
    file: UploadFile = File(..., description="PDF, text or markdown file"),
    entity_id: str | None = Form(default=None, max_length=64),
    title: str | None = Form(default=None, max_length=500),
    category: SourceCategory | None = Form(default=None),
    chunk_size: int | None = Query(default=None, ge=64, le=4096),
    chunk_overlap: int | None = Query(default=None, ge=0, le=1024),
    session: AsyncSession = Depends(get_async_session),
) -> IngestResponse:
    # Deferred so importing the router does not configure Celery
    from app.workers.tasks import ingest_document

    suffix = Path(file.filename or "").suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported document type '{suffix}'. Supported: {sorted(SUPPORTED_SUFFIXES)}",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)

    doc = Document(
        title=title or Path(file.filename).stem,
        filename=file.filename,
        file_size=len(content),
        entity_id=entity_id,
        category=category,
        topics=[],
        status=DocumentStatus.PENDING,
    )
    session.add(doc)
    await session.flush()

    # Prefixed with the document id so equal filenames never collide
    file_path = upload_dir / f"{doc.id}_{file.filename}"
    file_path.write_bytes(content)
    doc.file_path = str(file_path)

    # The worker reads the row, so it must be committed before dispatch
    await session.commit()

    task = ingest_document.delay(
        document_id=doc.id,
        file_path=str(file_path),
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
    )
    doc.celery_task_id = task.id

    logger.info(
        "Queued ingestion: document_id=%d, entity=%s, file=%s (%d bytes), task_id=%s",
        doc.id, entity_id or "global", file.filename, len(content), task.id,
    )
    return IngestResponse(document_id=doc.id, task_id=task.id, entity_id=entity_id)


@router.delete(
    "/documents/{document_id}",
    response_model=DocumentDeletedResponse,
    summary="Delete a document and all of its chunks",
)
async def delete_document(document_id: int) -> DocumentDeletedResponse:
    try:
        removed = await asyncio.to_thread(get_pipeline().delete_document, document_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return DocumentDeletedResponse(document_id=document_id, chunks_deleted=removed)


@router.patch(
    "/documents/{document_id}",
    response_model=DocumentTagsResponse,
    summary="Update document metadata and re-tag its chunks",
    description=(
        "Only fields present in the body change. Setting entity_id to null "
        "moves the document (and its chunks) to the global corpus; setting "
        "category to null clears it."
    ),
)
async def update_document(document_id: int, request: DocumentMetadataUpdate) -> DocumentTagsResponse:
    changes = {
        "title": request.title,
        "topics": [t.value for t in request.topics] if request.topics is not None else None,
    }
    for field_name in ("category", "entity_id"):
        if field_name in request.model_fields_set:
            changes[field_name] = getattr(request, field_name)

    try:
        tags = await asyncio.to_thread(get_pipeline().update_metadata, document_id, **changes)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return DocumentTagsResponse(
        document_id=document_id,
        entity_id=tags.entity_id,
        category=tags.category.value if tags.category else None,
        topics=list(tags.topics),
    )


@router.get(
    "/entities/{entity_id}/corpus",
    response_model=CorpusStatsResponse,
    summary="Corpus statistics for one entity",
)
async def entity_corpus(entity_id: str) -> CorpusStatsResponse:
    stats = await asyncio.to_thread(get_entity_corpus_stats, entity_id)
    return CorpusStatsResponse(**stats)
