"""
FastAPI dependencies (services, authentication)
"""
from fastapi import Request, HTTPException, status

from app.application.services import NotificationServices


def get_current_user_id(request: Request) -> int:
    """
    Current user id from the session (set by the login flow)

    Raises:
        HTTPException(401): if not logged in
    """
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return int(user_id)


def get_services(request: Request) -> NotificationServices:
    """Notification services built in the app lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification services are not running"
        )
    return services
