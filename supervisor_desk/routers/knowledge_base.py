
from fastapi import APIRouter, Depends
from typing import Optional

from supervisor_desk.core.dependencies import get_coordinator, get_knowledge_store
from supervisor_desk.core.exceptions import SupervisorDeskError
from supervisor_desk.core.logging import get_plain_logger
from supervisor_desk.models.schemas import KBEntry, KBEntryUpdate, KnowledgeEntry, KnowledgeSource, SearchBody
from supervisor_desk.services import EscalationCoordinator, KnowledgeStore
from .errors import to_http_error

logger = get_plain_logger(__name__)

router = APIRouter(
    prefix="/api/knowledge-base",
    tags=["Knowledge Base"]
)


@router.get("/")
async def get_knowledge_base(
    category: Optional[str] = None,
    active_only: bool = True,
    limit: int = 100,
    store: KnowledgeStore = Depends(get_knowledge_store)
):
    """Get learned and seeded answers"""
    try:
        entries = store.list_entries(category=category, active_only=active_only, limit=limit)
        return {
            "success": True,
            "count": len(entries),
            "answers": [e.model_dump(mode="json") for e in entries]
        }
    except SupervisorDeskError as e:
        logger.error(f"Error fetching knowledge base: {e}")
        raise to_http_error(e) from e


@router.get("/stats")
async def get_knowledge_base_stats(store: KnowledgeStore = Depends(get_knowledge_store)):
    """Entry counts, usage and confidence per category"""
    try:
        return {
            "success": True,
            "categories": store.category_stats()
        }
    except SupervisorDeskError as e:
        raise to_http_error(e) from e


@router.post("/", status_code=201)
async def add_to_knowledge_base(entry: KBEntry, store: KnowledgeStore = Depends(get_knowledge_store)):
    """Manually add (or overwrite by question) an entry"""
    try:
        saved = store.upsert(KnowledgeEntry(
            source=KnowledgeSource.ADMIN,
            **entry.model_dump()
        ))
        return {
            "success": True,
            "entry": saved.model_dump(mode="json")
        }
    except SupervisorDeskError as e:
        logger.error(f"Error adding to knowledge base: {e}")
        raise to_http_error(e) from e


@router.patch("/{kb_id}")
async def update_knowledge_entry(
    kb_id: int,
    changes: KBEntryUpdate,
    store: KnowledgeStore = Depends(get_knowledge_store)
):
    """Edit an entry in place by id"""
    try:
        current = store.get(kb_id)
        updated = store.upsert(KnowledgeEntry(**{
            **current.model_dump(),
            **changes.model_dump(exclude_unset=True, exclude_none=True),
        }))
        return {
            "success": True,
            "entry": updated.model_dump(mode="json")
        }
    except SupervisorDeskError as e:
        logger.error(f"Error updating KB entry #{kb_id}: {e}")
        raise to_http_error(e) from e


@router.post("/search")
async def search_knowledge_base(
    body: SearchBody,
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """Search knowledge base for answer"""
    try:
        result = await coordinator.search(body.question)
        return result.model_dump(exclude_none=True)
    except SupervisorDeskError as e:
        logger.error(f"Error searching knowledge base: {e}")
        raise to_http_error(e) from e


@router.delete("/{kb_id}")
async def deactivate_knowledge_entry(kb_id: int, store: KnowledgeStore = Depends(get_knowledge_store)):
    """Soft delete an entry; it stays on record but is no longer matched"""
    try:
        store.deactivate(kb_id)
        return {
            "success": True,
            "message": "Entry deactivated"
        }
    except SupervisorDeskError as e:
        raise to_http_error(e) from e
