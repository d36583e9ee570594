# backend/routes/orders.py
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
import logging

from database import get_db
from utils.tokenJWT import get_current_user, role_required, has_role, ADMIN, STAFF
from utils.audit import write_log, client_ip
from models.users import User
from models.order import Order, OrderStatus, OrderStatusLog
from services.checkout import CheckoutService, request_fingerprint
from services.errors import OrderNotFound
from services.notifications import NotificationEmitter
from services.order_state import OrderStateMachine
from services.payment import PaymentDispatcher
from services.shipping import ShippingAddress, ShippingFeeAdapter
from routes.deps import get_emitter, get_payment_dispatcher, get_shipping_adapter
from schemas.order import (
    OrderAdvancePayload, OrderCancelPayload, OrderCreatePayload, OrderPlacedResponse,
    OrderResponse, OrdersPage, OrderStatusLogOut, OrderStatusPatch,
)

router = APIRouter(prefix="/orders", tags=["Orders"])
logger = logging.getLogger(__name__)


def _is_staff(user: User) -> bool:
    return has_role(user, ADMIN, STAFF)

# Owners see their own orders, staff see everything; anything else is a 404
def _visible_order(db: Session, order_id: int, user: User) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None or (not _is_staff(user) and order.user_id != user.id):
        raise OrderNotFound(order_id=order_id)
    return order


@router.post("", response_model=OrderPlacedResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreatePayload,
    request: Request,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: PaymentDispatcher = Depends(get_payment_dispatcher),
    shipping: ShippingFeeAdapter = Depends(get_shipping_adapter),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    service = CheckoutService(db, dispatcher=dispatcher, emitter=emitter)
    warnings: List[str] = []

    shipping_fee = payload.shipping_fee
    if shipping_fee is None and payload.shipping_quote is not None:
        # Quote before any stock is touched
        q = payload.shipping_quote
        totals = await run_in_threadpool(service.preview, current_user.id)
        quote = await shipping.quote(
            ShippingAddress(q.province, q.district, q.ward), weight=q.weight, declared_value=totals.subtotal,
        )
        shipping_fee = quote.fee
        if quote.warning:
            warnings.append(quote.warning)

    ip = client_ip(request)

    def _place():
        placed = service.place_order(
            current_user.id,
            shipping_address=payload.shipping_address,
            payment_method=payload.payment_method,
            shipping_fee=shipping_fee or 0,
            notes=payload.notes,
            idempotency_key=idempotency_key,
            client_ip=ip or "",
            warnings=warnings,
            fingerprint=request_fingerprint(**payload.model_dump(mode="json")),
        )
        if not placed.replayed:
            write_log(
                db, actor_id=current_user.id, action="ORDER_CREATE", resource="orders", status="SUCCESS", ip=ip,
                meta={"order_id": placed.order.id, "order_number": placed.order.order_number,
                      "total": placed.order.total, "warnings": placed.warnings},
            )
        return placed

    placed = await run_in_threadpool(_place)
    if placed.replayed:
        response.status_code = status.HTTP_200_OK

    return OrderPlacedResponse(
        order=OrderResponse.model_validate(placed.order),
        payment_url=placed.payment_url,
        warnings=placed.warnings,
        replayed=placed.replayed,
    )


@router.get("", response_model=OrdersPage)
def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    query = db.query(Order)
    # Staff can browse all orders; customers only their own
    if not _is_staff(current_user):
        query = query.filter(Order.user_id == current_user.id)
    if status_filter is not None:
        query = query.filter(Order.status == status_filter)

    total = query.count()
    items = query.order_by(Order.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return {
        "items": [OrderResponse.model_validate(o) for o in items],
        "total": total, "page": page, "page_size": page_size,
    }


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _visible_order(db, order_id, current_user)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(
    order_id: int,
    request: Request,
    payload: Optional[OrderCancelPayload] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    order = _visible_order(db, order_id, current_user)
    previous = OrderStatus(order.status).value
    reason = payload.reason if payload else None

    order = OrderStateMachine(db, emitter=emitter).cancel(order.id, reason=reason, actor_id=current_user.id)
    write_log(
        db, actor_id=current_user.id, action="ORDER_CANCEL", resource="orders", status="SUCCESS",
        ip=client_ip(request), meta={"order_id": order.id, "from": previous, "reason": reason},
    )
    return order


@router.patch("/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: int,
    payload: OrderStatusPatch,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(role_required(ADMIN, STAFF)),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    previous = OrderStatus(_visible_order(db, order_id, current_user).status).value

    order = OrderStateMachine(db, emitter=emitter).set_status(
        order_id, payload.status, actor_id=current_user.id, note=payload.notes,
    )
    write_log(
        db, actor_id=current_user.id, action="ORDER_STATUS_CHANGE", resource="orders", status="SUCCESS",
        ip=client_ip(request), meta={"order_id": order.id, "from": previous, "to": payload.status.value},
    )
    return order


@router.post("/{order_id}/advance", response_model=OrderResponse)
def advance_order(
    order_id: int,
    request: Request,
    payload: Optional[OrderAdvancePayload] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(role_required(ADMIN, STAFF)),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    order = OrderStateMachine(db, emitter=emitter).advance(
        order_id, actor_id=current_user.id, note=payload.notes if payload else None,
    )
    write_log(
        db, actor_id=current_user.id, action="ORDER_ADVANCE", resource="orders", status="SUCCESS",
        ip=client_ip(request), meta={"order_id": order.id, "to": OrderStatus(order.status).value},
    )
    return order


@router.get("/{order_id}/history", response_model=List[OrderStatusLogOut])
def order_history(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(role_required(ADMIN, STAFF)),
):
    order = _visible_order(db, order_id, current_user)
    return (
        db.query(OrderStatusLog)
        .filter(OrderStatusLog.order_id == order.id)
        .order_by(OrderStatusLog.id.asc())
        .all()
    )
