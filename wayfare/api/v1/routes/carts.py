from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from wayfare.api.deps import get_current_user_id
from wayfare.db.session import get_db
from wayfare.models.cart import Cart
from wayfare.schemas.cart import CartItemIn, CartItemOut, CartItemUpdateIn, CartOut
from wayfare.services import cart_service

router = APIRouter(tags=["carts"])


def cart_out(cart: Cart) -> CartOut:
    totals = cart_service.cart_totals(cart)
    return CartOut(
        id=cart.id,
        status=cart.status.value,
        currency=cart.currency,
        expiresAt=cart.expires_at,
        items=[
            CartItemOut(
                id=i.id,
                itemType=i.item_type.value,
                providerId=i.provider_id,
                offerId=i.offer_id,
                title=i.title or "",
                priceCents=i.price_cents,
                currency=i.currency,
                quantity=i.quantity,
                lineTotalCents=i.line_total_cents,
                status=i.status.value,
                offerExpiresAt=i.offer_expires_at,
            )
            for i in cart.active_items
        ],
        itemCount=totals["item_count"],
        subtotalCents=totals["subtotal_cents"],
    )


@router.get("/carts/current", response_model=CartOut)
def get_current_cart(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, user_id)
    db.commit()
    return cart_out(cart)


@router.post("/carts/current/items", response_model=CartOut, status_code=201)
def add_cart_item(body: CartItemIn, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    item = cart_service.add_item(
        db,
        user_id,
        item_type=body.itemType,
        provider_id=body.providerId,
        offer_id=body.offerId,
        title=body.title,
        price_cents=body.priceCents,
        currency=body.currency,
        quantity=body.quantity,
        occupants=body.occupants,
        requires_document=body.requiresDocument,
        offer_expires_at=body.offerExpiresAt,
        schedule=body.schedule,
        cancellation_policy=body.cancellationPolicy,
    )
    db.commit()
    return cart_out(item.cart)


@router.get("/carts/{cart_id}", response_model=CartOut)
def get_cart(cart_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return cart_out(cart_service.get_cart(db, cart_id, user_id))


@router.delete("/carts/{cart_id}/items/{item_id}", response_model=CartOut)
def remove_cart_item(cart_id: str, item_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    cart = cart_service.remove_item(db, cart_id, item_id, user_id)
    db.commit()
    return cart_out(cart)


@router.patch("/carts/{cart_id}/items/{item_id}", response_model=CartOut)
def update_cart_item(
    cart_id: str,
    item_id: str,
    body: CartItemUpdateIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    cart = cart_service.update_item_quantity(db, cart_id, item_id, user_id, body.quantity)
    db.commit()
    return cart_out(cart)


@router.delete("/carts/{cart_id}/items", response_model=CartOut)
def clear_cart(cart_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    cart = cart_service.clear_cart(db, cart_id, user_id)
    db.commit()
    return cart_out(cart)
