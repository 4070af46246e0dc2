"""
Document API routes.

A document upload is what consumes an analysis credit, so creation is gated
on the analysis feature.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from legalinsight.core.auth import get_current_user_id
from legalinsight.core.clock import Clock, get_clock
from legalinsight.features.documents.service import list_documents, record_document, soft_delete_document
from legalinsight.features.entitlements.service import require_feature
from legalinsight.models.entitlement import Feature


router = APIRouter(prefix="/v1/documents", tags=["documents"])


class CreateDocumentRequest(BaseModel):
    title: Optional[str] = None


@router.post("", status_code=201)
def create_document(
    request: CreateDocumentRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """
    Record a new document for analysis.

    Errors:
        403 entitlement_denied: no analysis credit left (reason in error body)
    """
    require_feature(user_id, Feature.ANALYSIS, clock=clock)
    document = record_document(user_id, request.title, clock=clock)
    return {"document": document}


@router.get("")
def get_documents(
    include_deleted: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
):
    return {"documents": list_documents(user_id, include_deleted=include_deleted)}


@router.delete("/{document_id}")
def delete_document(
    document_id: str,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Soft delete; deleted documents stop counting against usage by default."""
    return {"document": soft_delete_document(user_id, document_id, clock=clock)}
