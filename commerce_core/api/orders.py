from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from commerce_core.application.orders import OrderService
from commerce_core.application.schemas import (
    OrderCancel, OrderCreate, OrderEventRead, OrderPage, OrderRead, OrderUpdate, Principal,
)
from commerce_core.infrastructure.catalog import CatalogClient
from commerce_core.infrastructure.db import get_db
from .deps import get_catalog, get_principal, require_admin

router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin/orders", tags=["admin"])


@router.post("", response_model=OrderRead, status_code=201)
def create_order(
    payload: OrderCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog),
):
    return OrderService(db, catalog).create_order(principal, payload)


@router.get("/mine", response_model=OrderPage)
def list_my_orders(
    page: int = Query(1),
    limit: int = Query(10),
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    orders, pagination = OrderService(db).list_user_orders(
        principal, page=page, limit=limit, status=status, start_date=start_date, end_date=end_date
    )
    return {"orders": orders, "pagination": pagination}


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    return OrderService(db).get_order(principal, order_id)


@router.get("/{order_id}/events", response_model=list[OrderEventRead])
def get_order_events(order_id: int, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    """Audit history, oldest first."""
    return OrderService(db).get_events(principal, order_id)


@router.put("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: int,
    payload: Optional[OrderCancel] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    reason = payload.reason if payload else None
    return OrderService(db).cancel_order(principal, order_id, reason)


@admin_router.get("", response_model=OrderPage)
def list_all_orders(
    page: int = Query(1),
    limit: int = Query(20),
    status: Optional[str] = None,
    financial_status: Optional[str] = None,
    fulfillment_status: Optional[str] = None,
    search: Optional[str] = None,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    orders, pagination = OrderService(db).list_all_orders(
        principal,
        page=page,
        limit=limit,
        status=status,
        financial_status=financial_status,
        fulfillment_status=fulfillment_status,
        search=search,
    )
    return {"orders": orders, "pagination": pagination}


@admin_router.put("/{order_id}", response_model=OrderRead)
def update_order(
    order_id: int,
    payload: OrderUpdate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return OrderService(db).update_order(principal, order_id, payload)
