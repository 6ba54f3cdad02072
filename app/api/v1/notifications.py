"""
Notification inbox and preference API endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.api.deps import get_current_user_id, get_services
from app.application.notification_preferences import PreferenceValidationError
from app.application.services import NotificationServices
from app.domain.notification import (
    Category,
    DeliveryStatus,
    NotificationPreferences,
    NotificationRecord,
    NotificationValidationError,
    coerce_enum,
)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class CategoryPreferenceBody(BaseModel):
    in_app: bool | None = None
    push: bool | None = None
    email: bool | None = None


class QuietHoursBody(BaseModel):
    enabled: bool | None = None
    start_time: str | None = None
    end_time: str | None = None
    timezone: str | None = None


class PreferencesUpdate(BaseModel):
    categories: dict[str, CategoryPreferenceBody] | None = None
    quiet_hours: QuietHoursBody | None = None
    digest: str | None = None


def _record_out(record: NotificationRecord) -> dict:
    return {
        "id": record.id,
        "category": record.category.value,
        "title": record.title,
        "body": record.body,
        "data": record.data,
        "priority": record.priority.value,
        "status": record.status.value,
        "read": record.is_read,
        "read_at": record.read_at.isoformat() if record.read_at else None,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
    }


def _preferences_out(prefs: NotificationPreferences) -> dict:
    quiet = prefs.quiet_hours
    return {
        "categories": {cat.value: pref.to_dict() for cat, pref in prefs.categories.items()},
        "quiet_hours": {
            "enabled": quiet.enabled,
            "start_time": quiet.start_time.strftime("%H:%M"),
            "end_time": quiet.end_time.strftime("%H:%M"),
            "timezone": quiet.timezone,
        },
        "digest": prefs.digest.value,
    }


def _category_param(value: str | None) -> Category | None:
    if value is None:
        return None
    try:
        return coerce_enum(Category, value, "category")
    except NotificationValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("")
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: str | None = None,
    unread_only: bool = False,
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    result = services.records.list_for_user(
        user_id, page=page, limit=limit, category=_category_param(category), unread_only=unread_only
    )
    return {
        "items": [_record_out(r) for r in result.items],
        "total": result.total,
        "unread_count": result.unread_count,
        "page": page,
        "limit": limit,
        "has_more": page * limit < result.total,
    }


@router.get("/unread-count")
def unread_count(
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    return {"count": services.records.unread_count(user_id)}


@router.get("/stats")
def notification_stats(
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    return services.records.stats(user_id)


@router.post("/read-all")
def mark_all_read(
    category: str | None = None,
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    cat = _category_param(category)
    if cat is None:
        updated = services.records.mark_all_read(user_id)
    else:
        updated = services.records.mark_category_read(user_id, cat)
    return {"success": True, "updated": updated}


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    if not services.records.mark_read(notification_id, user_id):
        record = services.records.get(notification_id)
        if record is None or record.user_id != user_id or record.status is DeliveryStatus.SCHEDULED:
            raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@router.delete("/{notification_id}")
def delete_notification(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    if not services.records.delete(notification_id, user_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@router.get("/preferences")
def get_preferences(
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    return _preferences_out(services.preferences.get_preferences(user_id))


@router.put("/preferences")
def update_preferences(
    body: PreferencesUpdate,
    user_id: int = Depends(get_current_user_id),
    services: NotificationServices = Depends(get_services),
):
    changes = body.model_dump(exclude_none=True)
    try:
        prefs = services.preferences.upsert(user_id, changes)
    except (PreferenceValidationError, NotificationValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _preferences_out(prefs)
