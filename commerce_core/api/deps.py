from fastapi import Depends, Header, HTTPException
from typing import Optional

from commerce_core.application.schemas import Principal
from commerce_core.core import set_request_context
from commerce_core.infrastructure.catalog import CatalogClient
from commerce_core.infrastructure.gateway import GatewayCaller, PaymentGateway, get_gateway, get_gateway_caller


async def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> Principal:
    """Identity forwarded by the gateway; this service does not authenticate."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    set_request_context(user_id=x_user_id)
    return Principal(id=x_user_id, role=(x_user_role or "customer").lower(), email=x_user_email)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


def get_caller() -> GatewayCaller:
    return get_gateway_caller()


def get_catalog() -> CatalogClient:
    return CatalogClient()
