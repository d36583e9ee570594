# backend/routes/stock.py
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import List, Optional

from database import get_db
from models.stock import MovementType
from models.users import User
from services.inventory import InventoryLedger
from services.notifications import NotificationEmitter
from routes.deps import get_emitter
from utils.tokenJWT import role_required, ADMIN, STAFF
from utils.audit import write_log, client_ip
import schemas.stock as stock_schemas

router = APIRouter(tags=["Stock"])

# Stock is managed by admins and warehouse staff
can_manage_stock = role_required(ADMIN, STAFF)


def _commit_and_notify(db: Session, ledger: InventoryLedger, emitter: NotificationEmitter) -> None:
    db.commit()
    emitter.emit_all(ledger.pending_events)
    ledger.pending_events.clear()


@router.get("/history", response_model=stock_schemas.StockMovementPage)
def list_movements(
    product_id: Optional[int] = Query(None),
    variant_id: Optional[int] = Query(None),
    type: Optional[MovementType] = Query(None),
    order_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(can_manage_stock),
):
    rows, total = InventoryLedger(db).history(
        product_id=product_id, variant_id=variant_id, movement_type=type, order_id=order_id,
        page=page, page_size=page_size,
    )
    return {"items": rows, "total": total, "page": page, "page_size": page_size}


@router.post("/stock-in", response_model=stock_schemas.StockMovementResponse)
def stock_in(
    payload: stock_schemas.StockInCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(can_manage_stock),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    ledger = InventoryLedger(db)
    movement = ledger.stock_in(
        payload.quantity,
        product_id=payload.product_id, variant_id=payload.variant_id,
        reason=payload.reason, actor_id=current_user.id,
    )
    _commit_and_notify(db, ledger, emitter)
    db.refresh(movement)

    write_log(
        db, actor_id=current_user.id, action="STOCK_IN", resource="stock", status="SUCCESS",
        ip=client_ip(request),
        meta={"movement_id": movement.id, "product_id": movement.product_id,
              "variant_id": movement.variant_id, "quantity": movement.quantity},
    )
    return movement


@router.post("/stock-adjustment", response_model=stock_schemas.StockAdjustmentResponse)
def adjust_stock(
    payload: stock_schemas.StockAdjustmentCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(can_manage_stock),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    ledger = InventoryLedger(db)
    movement = ledger.adjust_to(
        payload.new_quantity,
        product_id=payload.product_id, variant_id=payload.variant_id,
        reason=payload.reason, actor_id=current_user.id,
    )
    if movement is None:
        product_id, variant_id = ledger.resolve_key(payload.product_id, payload.variant_id)
        return {"movement": None, "stock_quantity": ledger.stock_level(product_id, variant_id)}

    _commit_and_notify(db, ledger, emitter)
    db.refresh(movement)

    write_log(
        db, actor_id=current_user.id, action="STOCK_ADJUSTMENT", resource="stock", status="SUCCESS",
        ip=client_ip(request),
        meta={"movement_id": movement.id, "previous": movement.previous_stock,
              "new": movement.new_stock, "reason": payload.reason},
    )
    return {"movement": movement, "stock_quantity": movement.new_stock}


@router.get("/alerts", response_model=List[stock_schemas.StockAlertOut])
def list_alerts(
    only_low: bool = Query(True),
    notified: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(can_manage_stock),
):
    return InventoryLedger(db).alerts(only_low=only_low, notified=notified)


@router.post("/alerts/{alert_id}/mark-notified", response_model=stock_schemas.StockAlertOut)
def mark_alert_notified(
    alert_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(can_manage_stock),
):
    alert = InventoryLedger(db).mark_notified(alert_id)
    db.commit()
    db.refresh(alert)
    write_log(
        db, actor_id=current_user.id, action="STOCK_ALERT_NOTIFIED", resource="stock", status="SUCCESS",
        ip=client_ip(request), meta={"alert_id": alert.id},
    )
    return alert
