"""
订单路由：创建、查询、状态流转、改址。
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from rentcore.models.schemas import Principal
from rentcore.routes.deps import get_store, require, to_json
from rentcore.services import policy
from rentcore.services.identity import get_current_principal
from rentcore.services.order_service import OrderService
from rentcore.store import RecordStore

router = APIRouter(prefix="/v1/orders")


class CreateOrderRequest(BaseModel):
    merchant_sku_id: int
    rent_start_date: str
    rent_end_date: str
    shipping_address: dict
    return_address: Optional[dict] = None
    notes: Optional[str] = None


class TransitionRequest(BaseModel):
    status: str
    patch: dict = {}
    force: bool = False


class AddressRequest(BaseModel):
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    address: Optional[str] = None
    region_code: Optional[str] = None
    full_address: Optional[str] = None


@router.post("")
async def create_order(
    body: CreateOrderRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """普通用户下单：冻结设备价值对应的授信额度，生成待支付租金记录。"""
    require(policy.can_create(principal, "orders"), "只有普通用户可以创建订单")
    data = body.model_dump()
    data["customer_id"] = principal.user_id
    order = OrderService(store).create_order(data, operator=principal.user_id)
    return {"code": 1, "data": to_json(order)}


@router.get("")
async def list_orders(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    where = policy.read_filter(principal, "orders") or {}
    if status:
        where["status"] = status
    orders = OrderService(store).list_orders(where, limit=limit)
    return {"code": 1, "data": to_json(orders)}


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    order = OrderService(store).get_order(order_id)
    require(policy.can_read(principal, "orders", order.to_dict()), "无权查看该订单")
    return {"code": 1, "data": to_json(order)}


@router.post("/{order_id}/transition")
async def transition_order(
    order_id: int,
    body: TransitionRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    service = OrderService(store)
    order = service.get_order(order_id)
    require(
        policy.can_transition(principal, order.to_dict(), body.status, force=body.force),
        "无权执行该状态变更",
    )
    order = service.transition_order(
        order_id, body.status, body.patch, operator=principal.user_id, force=body.force
    )
    return {"code": 1, "data": to_json(order)}


@router.post("/{order_id}/address")
async def change_address(
    order_id: int,
    body: AddressRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    service = OrderService(store)
    order = service.get_order(order_id)
    require(policy.can_write(principal, "orders", order.to_dict()), "无权修改该订单")
    order = service.change_order_address(
        order_id, body.model_dump(exclude_none=True), operator=principal.user_id
    )
    return {"code": 1, "data": to_json(order)}
