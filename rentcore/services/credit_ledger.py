"""
授信台账：按 (用户, 商户) 维护 credit_limit / used_credit。

不变式：0 <= used_credit <= credit_limit，available_credit = credit_limit - used_credit，
每次变更都重新计算。冻结与释放都是“读取-比较并交换”循环，
并发下单争用同一授信记录时不会丢失更新。

授信来源有两种：商户管理员手动授予（manual），用户使用商户发放的邀请码（invitation）。
"""

import logging
import os
import secrets
import string
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

from rentcore.errors import (
    CreditAlreadyExistsError,
    CreditConflictError,
    CreditInsufficientError,
    CreditInvalidStateError,
    CreditNotFoundError,
    ErrorCode,
    InvitationNotFoundError,
    InvitationUnavailableError,
    NotFoundError,
    ValidationError,
)
from rentcore.models.schemas import Credit, CreditInvitation, InvitationUsage
from rentcore.services.clock import Clock, local_now, to_local
from rentcore.store import RecordStore, parse_money

load_dotenv()

logger = logging.getLogger(__name__)

CREDIT_CAS_RETRIES = int(os.getenv("CREDIT_CAS_RETRIES", "5"))

CREDIT_STATUSES = ("active", "disabled", "frozen")

INVITATION_VALIDITY_DAYS = int(os.getenv("INVITATION_VALIDITY_DAYS", "30"))

INVITATION_STATUSES = ("active", "paused", "expired")

_CODE_ALPHABET = string.ascii_uppercase + string.digits


class CreditLedger:
    """授信冻结、释放、授予与调整。"""

    def __init__(self, store: RecordStore, clock: Clock = local_now):
        self.store = store
        self.clock = clock

    def _timestamp(self) -> str:
        return self.clock().isoformat(timespec="seconds")

    def _find(self, user_id: int, merchant_id: int) -> Optional[dict]:
        return self.store.find_one(
            "credits", {"user_id": user_id, "merchant_id": merchant_id}
        )

    def get_credit(self, user_id: int, merchant_id: int) -> Optional[Credit]:
        record = self._find(user_id, merchant_id)
        return Credit.from_record(record) if record else None

    def get_credit_by_id(self, credit_id: int) -> Credit:
        record = self.store.find_by_id("credits", credit_id)
        if not record:
            raise CreditNotFoundError("授信记录不存在", details={"credit_id": credit_id})
        return Credit.from_record(record)

    def _require_customer(self, user_id: int) -> dict:
        user = self.store.find_by_id("users", user_id)
        if not user:
            raise NotFoundError("用户不存在", code=ErrorCode.USER_NOT_FOUND,
                                details={"user_id": user_id})
        if user["role"] != "customer":
            raise ValidationError(
                f"只能为普通用户（customer）创建授信，当前角色: {user['role']}",
                field="user",
                code=ErrorCode.INVALID_USER_ROLE,
            )
        return user

    def _require_merchant(self, merchant_id: int) -> dict:
        merchant = self.store.find_by_id("merchants", merchant_id)
        if not merchant:
            raise NotFoundError("商户不存在", code=ErrorCode.MERCHANT_NOT_FOUND,
                                details={"merchant_id": merchant_id})
        return merchant

    def _swap_used(self, record: dict, new_used: Decimal) -> bool:
        limit = record["credit_limit"]
        return self.store.compare_and_update(
            "credits",
            record["id"],
            expected={
                "used_credit": record["used_credit"],
                "credit_limit": limit,
                "status": record["status"],
            },
            changes={
                "used_credit": new_used,
                "available_credit": limit - new_used,
            },
        )

    # ── 冻结 / 释放 ───────────────────────────────────────

    def freeze_credit(self, user_id: int, merchant_id: int, amount) -> Credit:
        """
        冻结授信额度。

        Raises:
            CreditNotFoundError: 授信记录不存在。
            CreditInvalidStateError: 授信状态不是 active。
            CreditInsufficientError: 可用额度不足，details 含 available / required。
        """
        amount = parse_money(amount, "amount")
        if amount < 0:
            raise ValidationError("冻结金额不能为负数", field="amount")

        for _ in range(CREDIT_CAS_RETRIES):
            record = self._find(user_id, merchant_id)
            if not record:
                raise CreditNotFoundError(
                    "未找到授信记录，无法下单",
                    details={"user_id": user_id, "merchant_id": merchant_id},
                )
            if record["status"] != "active":
                raise CreditInvalidStateError(
                    f"授信状态不可用: {record['status']}",
                    details={"credit_id": record["id"], "status": record["status"]},
                )

            available = record["credit_limit"] - record["used_credit"]
            if available < amount:
                raise CreditInsufficientError(
                    f"授信额度不足。可用: {available}元，需要: {amount}元",
                    details={
                        "credit_id": record["id"],
                        "available": str(available),
                        "required": str(amount),
                    },
                )

            if self._swap_used(record, record["used_credit"] + amount):
                logger.info(
                    "冻结授信: user_id=%s, merchant_id=%s, amount=%s",
                    user_id, merchant_id, amount,
                )
                return Credit.from_record(self.store.find_by_id("credits", record["id"]))

            logger.debug("授信记录并发更新，重试冻结: credit_id=%s", record["id"])

        raise CreditConflictError(
            "授信记录更新冲突，请稍后重试",
            details={"user_id": user_id, "merchant_id": merchant_id},
        )

    def release_credit(self, user_id: int, merchant_id: int, amount) -> Optional[Credit]:
        """
        释放授信额度，used_credit 下限为 0。

        授信记录不存在时只记录警告并返回 None，不阻断订单完成或取消。
        重复释放同一金额会被截断到 0，不报错。
        """
        amount = parse_money(amount, "amount")
        if amount < 0:
            raise ValidationError("释放金额不能为负数", field="amount")

        for _ in range(CREDIT_CAS_RETRIES):
            record = self._find(user_id, merchant_id)
            if not record:
                logger.warning(
                    "授信记录不存在，无法释放额度: user_id=%s, merchant_id=%s",
                    user_id, merchant_id,
                )
                return None

            new_used = max(Decimal("0.00"), record["used_credit"] - amount)
            if self._swap_used(record, new_used):
                logger.info(
                    "释放授信: user_id=%s, merchant_id=%s, amount=%s, used=%s",
                    user_id, merchant_id, amount, new_used,
                )
                return Credit.from_record(self.store.find_by_id("credits", record["id"]))

            logger.debug("授信记录并发更新，重试释放: credit_id=%s", record["id"])

        raise CreditConflictError(
            "授信记录更新冲突，请稍后重试",
            details={"user_id": user_id, "merchant_id": merchant_id},
        )

    # ── 授予 / 调整 ───────────────────────────────────────

    def grant_credit(
        self,
        user_id: int,
        merchant_id: int,
        amount,
        operator: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> tuple[Credit, str]:
        """
        创建或累加授信额度。

        Returns:
            (授信记录, "created" | "incremented")
        """
        amount = parse_money(amount, "credit_limit")
        if amount <= 0:
            raise ValidationError("授信额度必须大于 0", field="credit_limit")

        self._require_customer(user_id)
        self._require_merchant(merchant_id)

        with self.store.transaction():
            existing = self._find(user_id, merchant_id)
            if existing:
                old_limit = existing["credit_limit"]
                new_limit = old_limit + amount
                history = list(existing["credit_history"])
                history.append({
                    "date": self._timestamp(),
                    "old_limit": old_limit,
                    "new_limit": new_limit,
                    "reason": notes or f"新增授信额度 {amount}元",
                    "operator": operator,
                })
                record = self.store.update("credits", existing["id"], {
                    "credit_limit": new_limit,
                    "available_credit": new_limit - existing["used_credit"],
                    "credit_history": history,
                    "notes": notes or f"新增授信额度 {amount}元",
                })
                logger.info(
                    "授信额度已累加: credit_id=%s, %s -> %s",
                    record["id"], old_limit, new_limit,
                )
                return Credit.from_record(record), "incremented"

            record = self.store.create("credits", {
                "user_id": user_id,
                "merchant_id": merchant_id,
                "credit_limit": amount,
                "used_credit": Decimal("0.00"),
                "available_credit": amount,
                "status": "active",
                "source": "manual",
                "granted_at": self._timestamp(),
                "granted_by": operator,
                "notes": notes,
                "credit_history": [],
            })
        logger.info("创建授信: user_id=%s, merchant_id=%s, limit=%s", user_id, merchant_id, amount)
        return Credit.from_record(record), "created"

    def adjust_limit(
        self,
        credit_id: int,
        new_limit,
        operator: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Credit:
        """调整授信额度并追加调整历史；新额度不能低于已用额度。"""
        new_limit = parse_money(new_limit, "credit_limit")
        for _ in range(CREDIT_CAS_RETRIES):
            record = self.store.find_by_id("credits", credit_id)
            if not record:
                raise CreditNotFoundError("授信记录不存在", details={"credit_id": credit_id})
            if new_limit < record["used_credit"]:
                raise ValidationError(
                    f"授信额度不能低于已用额度 {record['used_credit']}元",
                    field="credit_limit",
                    details={"used_credit": str(record["used_credit"])},
                )
            history = list(record["credit_history"])
            history.append({
                "date": self._timestamp(),
                "old_limit": record["credit_limit"],
                "new_limit": new_limit,
                "reason": reason or "额度调整",
                "operator": operator,
            })
            swapped = self.store.compare_and_update(
                "credits",
                credit_id,
                expected={
                    "used_credit": record["used_credit"],
                    "credit_limit": record["credit_limit"],
                },
                changes={
                    "credit_limit": new_limit,
                    "available_credit": new_limit - record["used_credit"],
                    "credit_history": history,
                },
            )
            if swapped:
                logger.info(
                    "调整授信额度: credit_id=%s, %s -> %s",
                    credit_id, record["credit_limit"], new_limit,
                )
                return Credit.from_record(self.store.find_by_id("credits", credit_id))

        raise CreditConflictError("授信记录更新冲突，请稍后重试", details={"credit_id": credit_id})

    def set_status(self, credit_id: int, status: str, operator: Optional[int] = None) -> Credit:
        """启用 / 禁用 / 冻结授信；授信记录只禁用不删除。"""
        if status not in CREDIT_STATUSES:
            raise ValidationError(f"授信状态无效: {status}", field="status")
        record = self.store.find_by_id("credits", credit_id)
        if not record:
            raise CreditNotFoundError("授信记录不存在", details={"credit_id": credit_id})

        changes = {"status": status}
        if status == "disabled" and record["status"] != "disabled":
            changes["revoked_at"] = self._timestamp()
            changes["revoked_by"] = operator
        record = self.store.update("credits", credit_id, changes)
        logger.info("授信状态变更: credit_id=%s, status=%s", credit_id, status)
        return Credit.from_record(record)

    # ── 邀请码 ────────────────────────────────────────────

    def _generate_invitation_code(self) -> str:
        """CREDIT- + 8 位大写字母数字，查重后返回。"""
        for _ in range(10):
            suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))
            code = f"CREDIT-{suffix}"
            if not self.store.find_one("credit_invitations", {"invitation_code": code}):
                return code
        raise CreditConflictError("无法生成唯一邀请码，请重试")

    def create_invitation(
        self,
        merchant_id: int,
        credit_limit,
        validity_days: int = INVITATION_VALIDITY_DAYS,
        max_uses: Optional[int] = None,
        notes: Optional[str] = None,
        operator: Optional[int] = None,
        invitation_code: Optional[str] = None,
    ) -> CreditInvitation:
        """
        商户创建授信邀请码。

        Args:
            validity_days: 有效天数，过期时间 = 创建时间 + validity_days。
            max_uses: 最多可使用次数，None 表示不限。
            invitation_code: 自定义邀请码，缺省时自动生成。
        """
        credit_limit = parse_money(credit_limit, "credit_limit")
        if credit_limit <= 0:
            raise ValidationError("授信额度必须大于 0", field="credit_limit")
        if validity_days is None or validity_days < 1:
            raise ValidationError("有效天数至少为 1 天", field="validity_days")
        if max_uses is not None and max_uses < 1:
            raise ValidationError("使用次数上限至少为 1", field="max_uses")
        self._require_merchant(merchant_id)

        if invitation_code:
            invitation_code = invitation_code.strip().upper()
            if self.store.find_one("credit_invitations", {"invitation_code": invitation_code}):
                raise ValidationError(f"邀请码已存在: {invitation_code}", field="invitation_code")
        else:
            invitation_code = self._generate_invitation_code()

        expires_at = self.clock() + timedelta(days=validity_days)
        record = self.store.create("credit_invitations", {
            "merchant_id": merchant_id,
            "invitation_code": invitation_code,
            "credit_limit": credit_limit,
            "validity_days": validity_days,
            "max_uses": max_uses,
            "used_count": 0,
            "status": "active",
            "expires_at": expires_at.isoformat(timespec="seconds"),
            "created_by": operator,
            "notes": notes,
        })
        logger.info(
            "创建授信邀请码: merchant_id=%s, code=%s, limit=%s, max_uses=%s",
            merchant_id, invitation_code, credit_limit, max_uses,
        )
        return CreditInvitation.from_record(record)

    def get_invitation(self, invitation_id: int) -> CreditInvitation:
        record = self.store.find_by_id("credit_invitations", invitation_id)
        if not record:
            raise InvitationNotFoundError("邀请码不存在", details={"invitation_id": invitation_id})
        return CreditInvitation.from_record(record)

    def list_invitations(self, where: Optional[dict] = None) -> list[CreditInvitation]:
        records = self.store.find("credit_invitations", where, order_by="id DESC")
        return [CreditInvitation.from_record(r) for r in records]

    def set_invitation_status(self, invitation_id: int, status: str) -> CreditInvitation:
        """暂停 / 恢复 / 作废邀请码。"""
        if status not in INVITATION_STATUSES:
            raise ValidationError(f"邀请码状态无效: {status}", field="status")
        self.get_invitation(invitation_id)
        record = self.store.update("credit_invitations", invitation_id, {"status": status})
        logger.info("邀请码状态变更: invitation_id=%s, status=%s", invitation_id, status)
        return CreditInvitation.from_record(record)

    def delete_invitation(self, invitation_id: int) -> None:
        """删除未被使用过的邀请码；已有使用记录的只能暂停。"""
        invitation = self.get_invitation(invitation_id)
        if self.store.find_one("credit_invitation_usages", {"invitation_id": invitation_id}):
            raise InvitationUnavailableError(
                "邀请码已被使用，只能暂停不能删除",
                details={"invitation_id": invitation_id, "used_count": invitation.used_count},
            )
        self.store.delete("credit_invitations", invitation_id)
        logger.info("删除邀请码: invitation_id=%s, code=%s", invitation_id, invitation.invitation_code)

    def _check_redeemable(self, invitation: dict) -> None:
        status = invitation["status"]
        if status != "active":
            message = "邀请码已暂停" if status == "paused" else "邀请码已过期"
            raise InvitationUnavailableError(
                message, details={"invitation_code": invitation["invitation_code"], "status": status}
            )
        max_uses = invitation["max_uses"]
        if max_uses is not None and invitation["used_count"] >= max_uses:
            raise InvitationUnavailableError(
                "邀请码已达使用上限",
                details={"invitation_code": invitation["invitation_code"], "max_uses": max_uses},
            )

    def redeem_invitation(
        self,
        user_id: int,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Credit, InvitationUsage]:
        """
        用户使用邀请码获得商户授信。

        授信创建、使用记录、used_count 累加在同一事务内提交；
        达到 max_uses 时邀请码自动置为 expired。
        超过 expires_at 的邀请码会被置为 expired 并拒绝。

        Raises:
            InvitationNotFoundError: 邀请码不存在。
            InvitationUnavailableError: 已暂停、已过期或达到使用上限。
            CreditAlreadyExistsError: 用户在该商户已有授信。
        """
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("请输入邀请码", field="invitation_code")
        self._require_customer(user_id)

        expired = False
        with self.store.transaction():
            invitation = self.store.find_one("credit_invitations", {"invitation_code": code})
            if not invitation:
                raise InvitationNotFoundError("邀请码不存在", details={"invitation_code": code})
            if invitation["status"] == "active" and to_local(invitation["expires_at"]) < self.clock():
                # 过期状态随事务提交，之后再拒绝
                self.store.update("credit_invitations", invitation["id"], {"status": "expired"})
                expired = True
            else:
                self._check_redeemable(invitation)
                credit, usage = self._redeem(invitation, user_id, ip_address, user_agent)

        if expired:
            logger.info("邀请码已过期: code=%s", code)
            raise InvitationUnavailableError(
                "邀请码已过期", details={"invitation_code": code, "status": "expired"}
            )

        logger.info(
            "邀请码授信成功: user_id=%s, merchant_id=%s, code=%s, limit=%s",
            user_id, credit.merchant_id, code, credit.credit_limit,
        )
        return credit, usage

    def _redeem(
        self,
        invitation: dict,
        user_id: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[Credit, InvitationUsage]:
        merchant_id = invitation["merchant_id"]
        existing = self._find(user_id, merchant_id)
        if existing:
            raise CreditAlreadyExistsError(
                "您已有该商户的授信，无法重复使用邀请码",
                details={"credit_id": existing["id"], "merchant_id": merchant_id},
            )

        now = self._timestamp()
        amount = invitation["credit_limit"]
        credit = self.store.create("credits", {
            "user_id": user_id,
            "merchant_id": merchant_id,
            "credit_limit": amount,
            "used_credit": Decimal("0.00"),
            "available_credit": amount,
            "status": "active",
            "source": "invitation",
            "granted_at": now,
            "notes": f"邀请码 {invitation['invitation_code']}",
            "credit_history": [],
        })
        usage = self.store.create("credit_invitation_usages", {
            "invitation_id": invitation["id"],
            "invitation_code": invitation["invitation_code"],
            "user_id": user_id,
            "merchant_id": merchant_id,
            "credit_id": credit["id"],
            "credit_amount": amount,
            "used_at": now,
            "ip_address": ip_address,
            "user_agent": user_agent,
        })

        used_count = invitation["used_count"] + 1
        changes: dict = {"used_count": used_count}
        if invitation["max_uses"] is not None and used_count >= invitation["max_uses"]:
            changes["status"] = "expired"
        self.store.update("credit_invitations", invitation["id"], changes)
        credit = self.store.update("credits", credit["id"], {"invitation_usage_id": usage["id"]})
        return Credit.from_record(credit), InvitationUsage.from_record(usage)
