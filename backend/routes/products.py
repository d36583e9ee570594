# backend/routes/products.py
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from database import get_db
from utils.tokenJWT import get_current_user, role_required, ADMIN, STAFF
from utils.audit import write_log, client_ip
from models.users import User
from models.product import Product, ProductVariant
from services.errors import ProductInactiveOrMissing, VariantInactiveOrMissing
from services.inventory import InventoryLedger
from services.notifications import NotificationEmitter
from services.variants import VariantResolver, describe_options, ensure_unique_variant
from routes.deps import get_emitter
import schemas.product as product_schemas

router = APIRouter(tags=["Products"])

# Catalogue changes are for admins and staff
can_edit = role_required(ADMIN, STAFF)


def _product_or_404(db: Session, product_id: int) -> Product:
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise ProductInactiveOrMissing(product_id=product_id)
    return product


def _opening_stock(db: Session, emitter: NotificationEmitter, quantity: int, actor_id: int, **key) -> None:
    # Opening stock goes through the ledger so movements always sum to the counter
    ledger = InventoryLedger(db)
    if quantity > 0:
        ledger.stock_in(quantity, reason="Opening stock", actor_id=actor_id, **key)
    db.commit()
    emitter.emit_all(ledger.pending_events)


@router.post("/products", response_model=product_schemas.ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(
    payload: product_schemas.ProductCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(can_edit),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    product = Product(
        name=payload.name.strip(),
        description=payload.description,
        price=payload.price,
        stock_quantity=0,
        low_stock_threshold=payload.low_stock_threshold,
        is_active=payload.is_active,
    )
    db.add(product)
    db.flush()
    _opening_stock(db, emitter, payload.stock_quantity, current_user.id, product_id=product.id)
    db.refresh(product)

    write_log(
        db, actor_id=current_user.id, action="PRODUCT_CREATE", resource="products", status="SUCCESS",
        ip=client_ip(request), meta={"product_id": product.id, "name": product.name},
    )
    return product


@router.get("/products/{product_id}/variants", response_model=product_schemas.VariantListOut)
def list_variants(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    resolver = VariantResolver.for_product(db, product_id)
    variants = (
        db.query(ProductVariant)
        .filter(ProductVariant.product_id == product_id)
        .order_by(ProductVariant.id.asc())
        .all()
    )
    return {"product_id": product_id, "options": describe_options(resolver), "items": variants}


@router.post(
    "/products/{product_id}/variants",
    response_model=product_schemas.VariantOut,
    status_code=status.HTTP_201_CREATED,
)
def create_variant(
    product_id: int,
    payload: product_schemas.VariantCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(can_edit),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    product = _product_or_404(db, product_id)
    attrs = ensure_unique_variant(db, product.id, payload.attributes)

    variant = ProductVariant(
        product_id=product.id,
        sku=payload.sku,
        attributes=attrs.as_dict(),
        attribute_key=attrs.key,
        price_adjustment=payload.price_adjustment,
        stock_quantity=0,
        is_active=payload.is_active,
    )
    db.add(variant)
    db.flush()
    _opening_stock(db, emitter, payload.stock_quantity, current_user.id, product_id=product.id, variant_id=variant.id)
    db.refresh(variant)

    write_log(
        db, actor_id=current_user.id, action="VARIANT_CREATE", resource="products", status="SUCCESS",
        ip=client_ip(request), meta={"product_id": product.id, "variant_id": variant.id, "attributes": attrs.as_dict()},
    )
    return variant


@router.patch("/products/{product_id}/variants/{variant_id}", response_model=product_schemas.VariantOut)
def update_variant(
    product_id: int,
    variant_id: int,
    payload: product_schemas.VariantUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(can_edit),
):
    variant = db.query(ProductVariant).filter(
        ProductVariant.id == variant_id, ProductVariant.product_id == product_id
    ).first()
    if not variant:
        raise VariantInactiveOrMissing(product_id=product_id, variant_id=variant_id)

    changes = payload.model_dump(exclude_unset=True)
    attributes = changes.pop("attributes", None)
    becomes_active = changes.get("is_active", variant.is_active)

    # Re-check uniqueness whenever the result is an active variant
    if attributes is not None or (becomes_active and not variant.is_active):
        attrs = ensure_unique_variant(
            db, product_id, attributes if attributes is not None else variant.attributes, exclude_id=variant.id,
        )
        variant.attributes = attrs.as_dict()
        variant.attribute_key = attrs.key

    for field, value in changes.items():
        setattr(variant, field, value)

    db.commit()
    db.refresh(variant)

    write_log(
        db, actor_id=current_user.id, action="VARIANT_UPDATE", resource="products", status="SUCCESS",
        ip=client_ip(request), meta={"product_id": product_id, "variant_id": variant.id, "fields": sorted(payload.model_dump(exclude_unset=True))},
    )
    return variant
