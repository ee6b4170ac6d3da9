"""System notification broadcast.

Learn: There is no table behind this route. An admin posts a notice
and it goes straight to the publisher as system:notification —
either to everyone connected or to the listed user ids.
"""

from fastapi import APIRouter, Depends

from ticketflow.api.deps import get_publisher
from ticketflow.auth.dependencies import CurrentIdentity, require_roles
from ticketflow.events.types import SYSTEM_NOTIFICATION
from ticketflow.realtime.dispatcher import EventPublisher
from ticketflow.schemas.directory import NotificationCreate, NotificationRead
from ticketflow.services.notify import publish_safely

router = APIRouter()


@router.post("/notifications", response_model=NotificationRead, status_code=202)
async def broadcast_notification(
    body: NotificationCreate,
    identity: CurrentIdentity = Depends(require_roles("admin")),
    publisher: EventPublisher = Depends(get_publisher),
):
    data = {
        "title": body.title,
        "message": body.message,
        "variant": body.variant,
        "sentBy": identity.user_id,
    }
    if body.user_ids:
        data["userIds"] = body.user_ids
    publish_safely(publisher, SYSTEM_NOTIFICATION, data)
    # Accepted, not confirmed: delivery is best-effort
    return NotificationRead(delivered=True)
