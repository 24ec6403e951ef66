from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mandados.errors import AuthorizationError
from mandados.events import DispatchEvent, EventKind
from mandados.models import Caller
from mandados.routes.deps import current_caller
from mandados.services import Services, get_services

router = APIRouter(prefix="/admin", tags=["admin"])


class TestNotificationBody(BaseModel):
    identity: str | None = Field(default=None, description="Recipient; omit to reach the courier group")
    message: str | None = None


def _require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise AuthorizationError("administrators only")


@router.post("/notifications/test")
async def send_test_notification(
    body: TestNotificationBody,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Push a test event to one identity or to every available courier.
    An offline recipient is reported as delivered=false, not as an error.
    """
    _require_admin(caller)
    if body.identity:
        event = DispatchEvent(
            kind=EventKind.TEST,
            payload={"message": body.message or "Test notification"},
        )
        delivered = await services.registry.notify_identity(body.identity, event)
        recipients = 1 if delivered else 0
    else:
        event = DispatchEvent(
            kind=EventKind.TEST,
            payload={"message": body.message or "Test notification for all couriers"},
        )
        recipients = await services.registry.broadcast_to_couriers(event)
        delivered = recipients > 0
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "delivered": delivered, "recipients": recipients},
    )


@router.get("/connections")
async def connections(
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> dict:
    _require_admin(caller)
    return {"sessions": services.registry.counts()}
