from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.responses import Response

from newsletter_api.apps.api.deps import AuthContext, get_auth_context, get_db, get_session_factory
from newsletter_api.apps.api.response import DEFAULT_ERROR_RESPONSES, MessageResponse
from newsletter_api.persistence.repos import newsletter_issues as newsletter_issues_repo
from newsletter_api.services.idempotency import (
    IdempotencyKey,
    ReturnSavedResponse,
    save_response,
    try_processing,
)
from newsletter_api.services.newsletters import (
    create_draft,
    get_issue,
    issue_to_api,
    publish_issue,
    update_issue,
)


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)

CREATED_MESSAGE = "The newsletter issue has been created."
PUBLISH_SUCCESS_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly."


class NewsletterIssueRequest(BaseModel):
    title: str
    description: str = ""
    content: str = ""


class PublishRequest(BaseModel):
    idempotency_key: str


@router.post("/newsletters", status_code=201, response_model=MessageResponse)
async def create_newsletter_issue(
    payload: NewsletterIssueRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    await create_draft(
        db,
        user_id=auth.user_id,
        title=payload.title,
        description=payload.description,
        content=payload.content,
    )
    return MessageResponse(message=CREATED_MESSAGE)


@router.get("/newsletters")
async def list_published_issues(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    issues = await newsletter_issues_repo.list_published(db, user_id=auth.user_id)
    return [issue_to_api(issue) for issue in issues]


# Declared before the detail route so "drafts" is not captured as an issue id.
@router.get("/newsletters/drafts")
async def list_draft_issues(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    issues = await newsletter_issues_repo.list_drafts(db, user_id=auth.user_id)
    return [issue_to_api(issue) for issue in issues]


@router.get("/newsletters/{newsletter_issue_id}")
async def get_newsletter_issue(
    newsletter_issue_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    issue = await get_issue(db, user_id=auth.user_id, newsletter_issue_id=newsletter_issue_id)
    return issue_to_api(issue)


@router.put("/newsletters/{newsletter_issue_id}")
async def update_newsletter_issue(
    newsletter_issue_id: str,
    payload: NewsletterIssueRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    issue = await update_issue(
        db,
        user_id=auth.user_id,
        newsletter_issue_id=newsletter_issue_id,
        title=payload.title,
        description=payload.description,
        content=payload.content,
    )
    return issue_to_api(issue)


@router.put("/newsletter/{newsletter_issue_id}/publish")
async def publish_newsletter_issue(
    newsletter_issue_id: str,
    payload: PublishRequest,
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Response:
    # Reject malformed keys before any transaction is opened.
    idempotency_key = IdempotencyKey.parse(payload.idempotency_key)
    action = await try_processing(session_factory, idempotency_key, auth.user_id)
    if isinstance(action, ReturnSavedResponse):
        return action.response
    # Leaving the block without save_response rolls back the publish and the reservation.
    async with action.transaction as session:
        await publish_issue(session, user_id=auth.user_id, newsletter_issue_id=newsletter_issue_id)
        response = JSONResponse(content={"message": PUBLISH_SUCCESS_MESSAGE}, status_code=200)
        return await save_response(action.transaction, idempotency_key, auth.user_id, response)
