# backend/routes/payment.py
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from models.users import User
from services.errors import InvalidTransition, OrderNotFound, PaymentAlreadyCaptured
from services.notifications import NotificationEmitter
from services.payment import PaymentDispatcher, confirm_payment, mark_payment_failed
from routes.deps import get_emitter, get_payment_dispatcher, get_vnpay_client
from utils.audit import write_log, client_ip
from utils.tokenJWT import get_current_user, has_role, ADMIN, STAFF
from utils.vnpay_client import SUCCESS_CODE, VNPayClient
from schemas.payment import IPNResponse, PaymentCreateRequest, PaymentInitiationResponse, PaymentStatusOut

router = APIRouter(prefix="/payment", tags=["Payment"])
logger = logging.getLogger(__name__)


def _own_order(db: Session, order_id: int, user: User) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None or (order.user_id != user.id and not has_role(user, ADMIN, STAFF)):
        raise OrderNotFound(order_id=order_id)
    return order


# (Re)start online payment for an existing order
@router.post("/vnpay/create", response_model=PaymentInitiationResponse)
def create_vnpay_payment(
    payload: PaymentCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: PaymentDispatcher = Depends(get_payment_dispatcher),
):
    order = _own_order(db, payload.order_id, current_user)
    if order.payment_status == PaymentStatus.PAID:
        raise PaymentAlreadyCaptured("Order is already paid", order_id=order.id)
    if order.status == OrderStatus.CANCELLED:
        raise InvalidTransition("Cancelled orders cannot be paid", current=OrderStatus.CANCELLED.value)
    if order.payment_method != PaymentMethod.ONLINE:
        return PaymentInitiationResponse(order_id=order.id, warning="Order is paid on delivery")

    result = dispatcher.dispatch(db, order, client_ip(request) or "")
    write_log(
        db, actor_id=current_user.id, action="PAYMENT_CREATE", resource="payment",
        status="SUCCESS" if result.payment_url else "FAIL",
        ip=client_ip(request), meta={"order_id": order.id, "warnings": result.warnings},
    )
    return PaymentInitiationResponse(
        order_id=order.id,
        redirect_url=result.payment_url,
        warning=result.warnings[0] if result.warnings else None,
    )


@router.get("/vnpay/ipn", response_model=IPNResponse)
def vnpay_ipn(
    request: Request,
    db: Session = Depends(get_db),
    vnpay: VNPayClient = Depends(get_vnpay_client),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """Server-to-server payment result from VNPay.

    VNPay retries until it gets an RspCode it recognises, so every outcome is
    answered with a code rather than an HTTP error. Duplicates are answered
    with ``02`` and change nothing.
    """
    params = dict(request.query_params)
    txn_ref = params.get("vnp_TxnRef")
    logger.info("VNPay IPN received for %s (response=%s)", txn_ref, params.get("vnp_ResponseCode"))

    if not vnpay.verify(params):
        return IPNResponse(RspCode="97", Message="Invalid signature")

    order = db.query(Order).filter(Order.order_number == txn_ref).first()
    if order is None:
        return IPNResponse(RspCode="01", Message="Order not found")

    try:
        amount = int(params.get("vnp_Amount", "")) // 100
    except ValueError:
        amount = None
    if amount != order.total:
        logger.warning("VNPay IPN amount mismatch for %s: got %s, expected %s", txn_ref, amount, order.total)
        return IPNResponse(RspCode="04", Message="Invalid amount")

    if order.payment_status == PaymentStatus.PAID:
        return IPNResponse(RspCode="02", Message="Order already confirmed")

    succeeded = (
        params.get("vnp_ResponseCode") == SUCCESS_CODE
        and params.get("vnp_TransactionStatus", SUCCESS_CODE) == SUCCESS_CODE
    )
    if succeeded:
        result = confirm_payment(
            db, order_id=order.id, reference=params.get("vnp_TransactionNo"), emitter=emitter,
        )
        if result.outcome == "order_cancelled":
            write_log(
                db, actor_id=None, action="VNPAY_IPN", resource="payment", status="FAIL",
                ip=client_ip(request),
                meta={"order_id": order.id, "reference": params.get("vnp_TransactionNo"),
                      "reason": "order cancelled, refund required"},
            )
            return IPNResponse(RspCode="99", Message="Order was cancelled; payment will be refunded")
        if not result.applied:
            return IPNResponse(RspCode="02", Message="Order already confirmed")
    else:
        mark_payment_failed(db, order_id=order.id)

    write_log(
        db, actor_id=None, action="VNPAY_IPN", resource="payment", status="SUCCESS" if succeeded else "FAIL",
        ip=client_ip(request),
        meta={"order_id": order.id, "response_code": params.get("vnp_ResponseCode")},
    )
    return IPNResponse(RspCode="00", Message="Confirm Success")


@router.get("/status/{order_id}", response_model=PaymentStatusOut)
def payment_status(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    order = _own_order(db, order_id, current_user)
    return PaymentStatusOut(
        order_id=order.id,
        order_number=order.order_number,
        payment_method=order.payment_method,
        payment_status=order.payment_status,
        payment_reference=order.payment_reference,
        paid_at=order.paid_at,
    )
