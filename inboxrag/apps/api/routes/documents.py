from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from pydantic import BaseModel

from inboxrag.apps.api.deps import get_app_container
from inboxrag.apps.api.response import Envelope, envelope
from inboxrag.core.config import get_settings
from inboxrag.domain.records import DocumentRecord
from inboxrag.services.container import Container
from inboxrag.workers.pipeline_worker import run_until_empty


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/documents", tags=["documents"])


class DocumentResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    content_type: str
    size_bytes: int
    hash: str
    status: str
    chunk_count: int
    total_tokens: int
    error_reason: str | None
    created_at: str | None
    indexed_at: str | None


class DocumentAccepted(BaseModel):
    document_id: str
    status: str
    deduplicated: bool
    status_url: str


def _to_response(document: DocumentRecord) -> DocumentResponse:
    # Serialize datetimes to ISO 8601 for API clients.
    return DocumentResponse(
        id=document.id,
        tenant_id=document.tenant_id,
        name=document.name,
        content_type=document.content_type,
        size_bytes=document.size_bytes,
        hash=document.hash,
        status=document.status,
        chunk_count=document.chunk_count,
        total_tokens=document.total_tokens,
        error_reason=document.error_reason,
        created_at=document.created_at.isoformat() if document.created_at else None,
        indexed_at=document.indexed_at.isoformat() if document.indexed_at else None,
    )


@router.post("", status_code=202, response_model=Envelope[DocumentAccepted])
async def upload_document(
    request: Request,
    tenant_id: str = Form(...),
    file: UploadFile = File(...),
    container: Container = Depends(get_app_container),
) -> dict:
    content = await file.read()
    result = await container.indexer.ingest(
        tenant_id,
        content,
        filename=file.filename or "document.txt",
        content_type=file.content_type or "text/plain",
    )
    document = result.document
    if get_settings().execution_mode == "inline" and result.enqueued:
        await run_until_empty(container)
        document = await container.indexer.get(tenant_id, document.id)
    payload = DocumentAccepted(
        document_id=document.id,
        status=document.status,
        deduplicated=result.deduplicated,
        status_url=f"/v1/documents/{document.id}?tenant_id={tenant_id}",
    )
    return envelope(request, payload.model_dump())


@router.get("/{document_id}", response_model=Envelope[DocumentResponse])
async def get_document(
    document_id: str,
    request: Request,
    tenant_id: str = Query(...),
    container: Container = Depends(get_app_container),
) -> dict:
    document = await container.indexer.get(tenant_id, document_id)
    return envelope(request, _to_response(document).model_dump())


@router.delete("/{document_id}", response_model=Envelope[DocumentResponse])
async def delete_document(
    document_id: str,
    request: Request,
    tenant_id: str = Query(...),
    container: Container = Depends(get_app_container),
) -> dict:
    document = await container.indexer.delete(tenant_id, document_id)
    return envelope(request, _to_response(document).model_dump())
