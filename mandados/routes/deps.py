from fastapi import Depends, Header

from mandados.auth import bearer_token
from mandados.models import Caller
from mandados.services import Services, get_services


async def current_caller(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Caller:
    return await services.authenticator.authenticate(bearer_token(authorization))
