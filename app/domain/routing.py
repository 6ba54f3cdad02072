"""
Channel routing — which of the requested channels may carry a notification.
"""
from app.domain.notification import Channel, CategoryPreference, NotificationIntent


def route(
    intent: NotificationIntent,
    preference: CategoryPreference,
    quiet_hours_suppressed: bool,
) -> frozenset[Channel]:
    """
    Narrow intent.requested_channels by category preference.

    Quiet hours only ever remove push: in-app and email do not interrupt
    the device. An empty result means the caller must skip dispatch.
    """
    allowed = set()
    for channel in intent.requested_channels:
        if not preference.allows(channel):
            continue
        if channel == Channel.PUSH and quiet_hours_suppressed:
            continue
        allowed.add(channel)
    return frozenset(allowed)
