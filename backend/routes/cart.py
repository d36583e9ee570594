# backend/routes/cart.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from models.cart import Cart, CartItem
from models.users import User
from schemas.cart import CartAddItem, CartItemOut, CartOut
from services.checkout import CheckoutService
from services.errors import CartItemNotFound, DomainError, InsufficientStock
from services.inventory import InventoryLedger
from services.variants import VariantResolver
from utils.audit import client_ip, write_log
from utils.tokenJWT import get_current_user

router = APIRouter(prefix="/cart", tags=["Cart"])


def open_cart_for(db: Session, user_id: int) -> Cart:
    """The user's open cart; created lazily on first use."""
    cart = db.query(Cart).filter(Cart.user_id == user_id, Cart.status == "open").first()
    if cart is None:
        cart = Cart(user_id=user_id, status="open")
        db.add(cart)
        db.commit()
        db.refresh(cart)
    return cart


def _line_for(db: Session, cart: Cart, product_id: int, variant_id):
    query = db.query(CartItem).filter(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
    if variant_id is None:
        return query.filter(CartItem.variant_id.is_(None)).first()
    return query.filter(CartItem.variant_id == variant_id).first()


def render_cart(db: Session, cart: Cart) -> CartOut:
    # Lines are priced from the live catalogue; unsellable lines stay visible at zero
    pricer = CheckoutService(db)
    out = CartOut(items=[], subtotal=0, warnings=[])

    for entry in cart.items:
        try:
            priced = pricer.price_item(entry)
        except DomainError as exc:
            label = entry.product.name if entry.product else ""
            out.warnings.append(f"{label or 'Item'} is no longer available ({exc.code})")
            out.items.append(CartItemOut(
                id=entry.id, product_id=entry.product_id, variant_id=entry.variant_id,
                name=label, qty=entry.qty, unit_price=0, line_total=0,
            ))
            continue

        out.subtotal += priced.line_total
        out.warnings.extend(priced.warnings)
        out.items.append(CartItemOut(
            id=entry.id, product_id=entry.product_id, variant_id=entry.variant_id,
            name=priced.product_name, variant_label=priced.variant_label,
            qty=entry.qty, unit_price=priced.unit_price, line_total=priced.line_total,
        ))
    return out


@router.get("", response_model=CartOut)
def view_cart(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return render_cart(db, open_cart_for(db, current_user.id))


@router.post("/add", response_model=CartOut)
def add_line(
    payload: CartAddItem,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    cart = open_cart_for(db, current_user.id)
    variant_id = VariantResolver.for_product(db, payload.product_id).resolve(payload.attributes).variant_id

    # Adding the same selection again grows the existing line
    line = _line_for(db, cart, payload.product_id, variant_id)
    wanted = payload.qty + (line.qty if line is not None else 0)

    # Advisory only; nothing is held until the order is placed
    on_hand = InventoryLedger(db).stock_level(payload.product_id, variant_id)
    if wanted > on_hand:
        raise InsufficientStock(
            product_id=payload.product_id, variant_id=variant_id, available=on_hand, requested=wanted,
        )

    if line is None:
        db.add(CartItem(cart_id=cart.id, product_id=payload.product_id, variant_id=variant_id, qty=wanted))
    else:
        line.qty = wanted

    write_log(db, actor_id=current_user.id, action="CART_ADD", resource="cart", ip=client_ip(request),
              meta={"product_id": payload.product_id, "variant_id": variant_id, "qty": payload.qty},
              commit=False)
    db.commit()
    db.refresh(cart)
    return render_cart(db, cart)


@router.delete("/items/{item_id}", response_model=CartOut)
def remove_line(
    item_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    cart = open_cart_for(db, current_user.id)
    line = db.get(CartItem, item_id)
    if line is None or line.cart_id != cart.id:
        raise CartItemNotFound(item_id=item_id)

    db.delete(line)
    write_log(db, actor_id=current_user.id, action="CART_REMOVE", resource="cart", ip=client_ip(request),
              meta={"item_id": item_id}, commit=False)
    db.commit()
    db.refresh(cart)
    return render_cart(db, cart)
