"""
授信路由：授予、查询、调整额度、启用/禁用，以及授信邀请码的发放与使用。
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from rentcore.models.schemas import Principal
from rentcore.routes.deps import get_store, require, to_json
from rentcore.services import policy
from rentcore.services.credit_ledger import INVITATION_VALIDITY_DAYS, CreditLedger
from rentcore.services.identity import get_current_principal
from rentcore.store import RecordStore

router = APIRouter(prefix="/v1/credits")


class GrantRequest(BaseModel):
    user_id: int
    credit_limit: str
    notes: Optional[str] = None


class LimitRequest(BaseModel):
    credit_limit: str
    reason: Optional[str] = None


class StatusRequest(BaseModel):
    status: str


class InvitationRequest(BaseModel):
    credit_limit: str
    validity_days: int = INVITATION_VALIDITY_DAYS
    max_uses: Optional[int] = None
    notes: Optional[str] = None
    invitation_code: Optional[str] = None


class RedeemRequest(BaseModel):
    invitation_code: str


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    return request.client.host if request.client else None


# ── 邀请码（需在 /{credit_id} 之前注册） ──────────────────


@router.post("/invitations")
async def create_invitation(
    body: InvitationRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """商户管理员创建授信邀请码。"""
    require(policy.can_create(principal, "credit_invitations"), "只有商户管理员可以创建邀请码")
    invitation = CreditLedger(store).create_invitation(
        principal.merchant_id,
        body.credit_limit,
        validity_days=body.validity_days,
        max_uses=body.max_uses,
        notes=body.notes,
        operator=principal.user_id,
        invitation_code=body.invitation_code,
    )
    return {"code": 1, "data": to_json(invitation)}


@router.get("/invitations")
async def list_invitations(
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    where = policy.read_filter(principal, "credit_invitations")
    return {"code": 1, "data": to_json(CreditLedger(store).list_invitations(where))}


@router.post("/invitations/use")
async def redeem_invitation(
    body: RedeemRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """用户使用邀请码获得商户授信。"""
    require(policy.can_create(principal, "credit_invitation_usages"), "只有普通用户可以使用邀请码")
    credit, usage = CreditLedger(store).redeem_invitation(
        principal.user_id,
        body.invitation_code,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "code": 1,
        "msg": "授信成功",
        "data": {"credit": to_json(credit), "usage": to_json(usage)},
    }


@router.patch("/invitations/{invitation_id}/status")
async def set_invitation_status(
    invitation_id: int,
    body: StatusRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    ledger = CreditLedger(store)
    invitation = ledger.get_invitation(invitation_id)
    require(policy.can_write(principal, "credit_invitations", invitation.to_dict()), "无权修改该邀请码")
    invitation = ledger.set_invitation_status(invitation_id, body.status)
    return {"code": 1, "data": to_json(invitation)}


@router.delete("/invitations/{invitation_id}")
async def delete_invitation(
    invitation_id: int,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    ledger = CreditLedger(store)
    invitation = ledger.get_invitation(invitation_id)
    require(policy.can_delete(principal, "credit_invitations", invitation.to_dict()), "无权删除该邀请码")
    ledger.delete_invitation(invitation_id)
    return {"code": 1, "msg": "已删除"}


@router.post("/grant")
async def grant_credit(
    body: GrantRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """商户管理员为用户授予授信；已有记录时累加额度。"""
    require(policy.can_create(principal, "credits"), "只有商户管理员可以授予授信")
    credit, action = CreditLedger(store).grant_credit(
        body.user_id,
        principal.merchant_id,
        body.credit_limit,
        operator=principal.user_id,
        notes=body.notes,
    )
    return {"code": 1, "action": action, "data": to_json(credit)}


@router.get("/{credit_id}")
async def get_credit(
    credit_id: int,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    credit = CreditLedger(store).get_credit_by_id(credit_id)
    require(policy.can_read(principal, "credits", credit.to_dict()), "无权查看该授信")
    return {"code": 1, "data": to_json(credit)}


@router.patch("/{credit_id}/limit")
async def adjust_limit(
    credit_id: int,
    body: LimitRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    ledger = CreditLedger(store)
    credit = ledger.get_credit_by_id(credit_id)
    require(policy.can_write(principal, "credits", credit.to_dict()), "无权修改该授信")
    credit = ledger.adjust_limit(
        credit_id, body.credit_limit, operator=principal.user_id, reason=body.reason
    )
    return {"code": 1, "data": to_json(credit)}


@router.patch("/{credit_id}/status")
async def set_status(
    credit_id: int,
    body: StatusRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    ledger = CreditLedger(store)
    credit = ledger.get_credit_by_id(credit_id)
    require(policy.can_write(principal, "credits", credit.to_dict()), "无权修改该授信")
    credit = ledger.set_status(credit_id, body.status, operator=principal.user_id)
    return {"code": 1, "data": to_json(credit)}
