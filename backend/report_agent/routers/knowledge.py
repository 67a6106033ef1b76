"""API routes for reviewing knowledge learned from conversations."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from report_agent.core.auth import CallerContext, require_roles
from report_agent.core.logging import logger
from report_agent.models.report import KnowledgeItem
from report_agent.services.state_store import StateStore


router = APIRouter(prefix="/knowledge", tags=["knowledge"])


def get_state_store(request: Request) -> StateStore:
    return request.app.state.state_store


@router.get("/pending")
def list_pending(
    customer_id: Optional[str] = Query(default=None, alias="customerId"),
    limit: int = Query(default=50, ge=1, le=500),
    context: CallerContext = Depends(require_roles("admin")),
    store: StateStore = Depends(get_state_store),
):
    items = store.list_pending_knowledge(customer_id=customer_id, limit=limit)
    return {
        "items": [KnowledgeItem.model_validate(item).model_dump(mode="json", by_alias=True) for item in items],
        "count": len(items),
    }


@router.post("/{knowledge_id}/activate")
def activate(
    knowledge_id: int,
    context: CallerContext = Depends(require_roles("admin")),
    store: StateStore = Depends(get_state_store),
):
    item = store.activate_knowledge(knowledge_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Knowledge item not found")
    logger.info("Knowledge item activated", knowledge_id=knowledge_id, actor=context.user_id)
    return KnowledgeItem.model_validate(item).model_dump(mode="json", by_alias=True)
