from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.apps.api.deps import get_db, get_email_client
from newsletter_api.apps.api.response import DEFAULT_ERROR_RESPONSES, MessageResponse
from newsletter_api.core.config import get_settings
from newsletter_api.domain.subscriber import NewSubscriber, SubscriberEmail, SubscriberName
from newsletter_api.persistence.repos import users as users_repo
from newsletter_api.services.email_client import NotificationSender
from newsletter_api.services.subscriptions import confirm_subscription, subscribe


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"], responses=DEFAULT_ERROR_RESPONSES)

SUBSCRIBED_MESSAGE = "Thanks for subscribing! Please check your inbox to confirm your subscription."
CONFIRMED_MESSAGE = "Your subscription has been confirmed."


class SubscribeRequest(BaseModel):
    name: str
    email: str
    user_id: str


@router.post("", response_model=MessageResponse)
async def create_subscription(
    payload: SubscribeRequest,
    db: AsyncSession = Depends(get_db),
    email_client: NotificationSender = Depends(get_email_client),
) -> MessageResponse:
    # Domain parsing raises ValidationError, which the app maps to 400.
    new_subscriber = NewSubscriber(
        email=SubscriberEmail.parse(payload.email),
        name=SubscriberName.parse(payload.name),
        user_id=payload.user_id,
    )
    if await users_repo.get_user(db, payload.user_id) is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "BAD_REQUEST", "message": "Unknown newsletter author."},
        )
    await subscribe(
        db,
        new_subscriber=new_subscriber,
        email_client=email_client,
        base_url=get_settings().application_base_url,
    )
    return MessageResponse(message=SUBSCRIBED_MESSAGE)


@router.put("/confirm", response_model=MessageResponse)
async def confirm(
    subscription_token: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    if not subscription_token:
        raise HTTPException(
            status_code=400,
            detail={"code": "BAD_REQUEST", "message": "A subscription token is required."},
        )
    if not await confirm_subscription(db, subscription_token):
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Unknown subscription token."},
        )
    return MessageResponse(message=CONFIRMED_MESSAGE)
