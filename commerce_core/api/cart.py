from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from commerce_core.application.cart import CartService
from commerce_core.application.schemas import (
    CartItemAdd, CartItemUpdate, CartLineItemRead, CartRead, Principal,
)
from commerce_core.infrastructure.db import get_db
from .deps import get_principal

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=Optional[CartRead])
def get_cart(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    return CartService(db).get_cart(principal)


@router.post("/add", response_model=CartLineItemRead, status_code=201)
def add_to_cart(payload: CartItemAdd, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    return CartService(db).add_item(
        principal,
        product_id=payload.product_id,
        variant_id=payload.variant_id,
        quantity=payload.quantity,
        properties=payload.properties,
    )


@router.put("/update/{item_id}", response_model=Optional[CartLineItemRead])
def update_cart_item(
    item_id: int,
    payload: CartItemUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return CartService(db).update_item(principal, item_id, payload.quantity, payload.properties)


@router.delete("/remove/{item_id}", status_code=204)
def remove_cart_item(item_id: int, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    CartService(db).remove_item(principal, item_id)
    return None


@router.delete("/clear")
def clear_cart(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    removed = CartService(db).clear(principal)
    return {"removed": removed}
