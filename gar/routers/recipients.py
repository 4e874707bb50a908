"""Notification recipient endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from gar.dependencies import get_actor, get_repository
from gar.repository import AssessmentRepository
from gar.schemas.recipients import RecipientGroup, RecipientPreviewResponse, RecipientSelection
from gar.services.lifecycle import Actor
from gar.services.recipients import list_groups, resolve_recipients

router = APIRouter(prefix="/api/recipients", tags=["recipients"])


@router.get("/groups", response_model=list[RecipientGroup])
async def get_groups(actor: Actor = Depends(get_actor)) -> list[RecipientGroup]:
    return list_groups()


@router.post("/preview", response_model=RecipientPreviewResponse)
async def preview_recipients(
    selection: RecipientSelection,
    actor: Actor = Depends(get_actor),
    repository: AssessmentRepository = Depends(get_repository),
) -> RecipientPreviewResponse:
    """Who would be notified right now for this selection."""
    recipients = resolve_recipients(selection, await repository.get_all_users())
    return RecipientPreviewResponse(total=len(recipients), recipients=recipients)
