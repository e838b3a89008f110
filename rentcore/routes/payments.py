"""
支付记录路由：按订单查询、确认到账、确认退款。
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rentcore.models.schemas import Principal
from rentcore.routes.deps import get_store, require, to_json
from rentcore.services import policy
from rentcore.services.identity import get_current_principal
from rentcore.services.order_service import OrderService
from rentcore.services.payment_ledger import PaymentLedger
from rentcore.store import RecordStore

router = APIRouter(prefix="/v1")


class MarkPaidRequest(BaseModel):
    channel: Optional[str] = None


@router.get("/orders/{order_id}/payments")
async def list_payments(
    order_id: int,
    type: Optional[str] = None,
    status: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    order = OrderService(store).get_order(order_id)
    require(policy.can_read(principal, "payments", order.to_dict()), "无权查看该订单的支付记录")
    payments = PaymentLedger(store).list_for_order(order_id, type, status)
    return {"code": 1, "data": to_json(payments)}


@router.post("/payments/{payment_id}/paid")
async def mark_paid(
    payment_id: int,
    body: MarkPaidRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """平台确认到账（如线下收取的逾期费）。"""
    ledger = PaymentLedger(store)
    payment = ledger.get_payment(payment_id)
    require(policy.can_write(principal, "payments", payment.to_dict()), "只有平台可以确认支付")
    payment = ledger.mark_paid(payment_id, body.channel)
    return {"code": 1, "data": to_json(payment)}


@router.post("/payments/{payment_id}/refund")
async def mark_refunded(
    payment_id: int,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """平台确认已退款；只有已支付的记录可以退款。"""
    ledger = PaymentLedger(store)
    payment = ledger.get_payment(payment_id)
    require(policy.can_write(principal, "payments", payment.to_dict()), "只有平台可以确认退款")
    payment = ledger.mark_refunded(payment_id)
    return {"code": 1, "data": to_json(payment)}
