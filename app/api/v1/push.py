"""
Web Push subscription API endpoints.
"""
from fastapi import APIRouter, Request, Depends, HTTPException
from pydantic import BaseModel

from app.api.deps import get_current_user_id, get_services
from app.application.push_subscriptions import SubscriptionValidationError
from app.application.services import NotificationServices
from app.domain.notification import Category, Channel, NotificationIntent, Priority

router = APIRouter(prefix="/api/push", tags=["push"])


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class SubscribeRequest(BaseModel):
    endpoint: str
    keys: PushKeys
    user_agent: str | None = None
    device_type: str | None = None


class UnsubscribeRequest(BaseModel):
    endpoint: str


@router.get("/vapid-public-key")
def vapid_public_key(services: NotificationServices = Depends(get_services)):
    key = services.settings.VAPID_PUBLIC_KEY
    if not key:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    return {"public_key": key}


@router.post("/subscribe")
def subscribe(
    body: SubscribeRequest,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    user_agent = body.user_agent or request.headers.get("user-agent")
    try:
        endpoint = services.subscriptions.upsert(
            user_id,
            body.endpoint,
            body.keys.p256dh,
            body.keys.auth,
            user_agent=user_agent[:512] if user_agent else None,
            device_type=body.device_type,
        )
    except SubscriptionValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "id": endpoint.id}


@router.delete("/unsubscribe")
def unsubscribe(
    body: UnsubscribeRequest,
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    deactivated = services.subscriptions.deactivate(user_id, body.endpoint)
    return {"success": True, "deactivated": deactivated}


@router.post("/test")
def test_push(
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    """Send a test push to verify the setup."""
    intent = NotificationIntent(
        user_id=user_id,
        category=Category.SYSTEM,
        title="MorphSave",
        body="Push notifications are working!",
        data={"url": "/settings/notifications"},
        priority=Priority.MEDIUM,
        requested_channels=frozenset({Channel.PUSH}),
    )
    record = services.coordinator.deliver(intent, {Channel.PUSH})
    return {
        "success": True,
        "status": record.status.value,
        "devices": len(services.subscriptions.list_active(user_id)),
        "error": record.delivery_error,
    }
