"""
支付 / 附加费用台账：记录与订单关联的每一笔资金往来。

金额符号表示方向：正数为应收，负数为退款。记录只追加，
除状态流转（pending -> paid/failed，paid -> refunded）外不修改。
"""

import logging
import random
import string
from datetime import datetime
from decimal import Decimal
from typing import Optional

from rentcore.errors import ErrorCode, InvalidStateError, NotFoundError, ValidationError
from rentcore.models.schemas import Payment
from rentcore.services.clock import Clock, local_now
from rentcore.store import RecordStore, to_money

logger = logging.getLogger(__name__)

# 支付类型 -> 交易流水号前缀
TYPE_PREFIXES = {
    "rent": "RENT",
    "rent_canceled": "CANC",
    "overdue": "OVER",
    "addr_up": "ADDU",
    "addr_down": "ADDD",
}

PAYMENT_CHANNELS = ("wechat", "alipay", "bank", "other")

_ALLOWED_STATUS_CHANGES = {
    "pending": ("paid", "failed"),
    "paid": ("refunded",),
}


class PaymentLedger:
    """支付记录：创建、状态流转、按订单汇总。"""

    def __init__(self, store: RecordStore, clock: Clock = local_now):
        self.store = store
        self.clock = clock

    def _generate_transaction_no(self, payment_type: str) -> str:
        """格式：前缀-毫秒时间戳-9位随机大写字母数字，确保唯一。"""
        prefix = TYPE_PREFIXES[payment_type]
        alphabet = string.ascii_uppercase + string.digits
        for _ in range(10):
            millis = int(datetime.now().timestamp() * 1000)
            rand = "".join(random.choices(alphabet, k=9))
            transaction_no = f"{prefix}-{millis}-{rand}"
            if not self.store.find_one("payments", {"transaction_no": transaction_no}):
                return transaction_no
        raise InvalidStateError(
            "无法生成唯一交易流水号，请重试",
            code=ErrorCode.PAYMENT_INVALID_STATUS,
        )

    def record_payment(
        self,
        order_id: int,
        payment_type: str,
        amount,
        status: str = "pending",
        channel: Optional[str] = None,
        amount_detail: Optional[dict] = None,
        notes: Optional[str] = None,
    ) -> Payment:
        if payment_type not in TYPE_PREFIXES:
            raise ValidationError(f"支付类型无效: {payment_type}", field="type")
        if status not in ("pending", "paid"):
            raise ValidationError(f"新建支付记录状态无效: {status}", field="status")
        if channel is not None and channel not in PAYMENT_CHANNELS:
            raise ValidationError(f"支付渠道无效: {channel}", field="channel")

        data = {
            "order_id": order_id,
            "transaction_no": self._generate_transaction_no(payment_type),
            "type": payment_type,
            "amount": to_money(amount),
            "amount_detail": amount_detail,
            "status": status,
            "channel": channel,
            "notes": notes,
        }
        if status == "paid":
            data["paid_at"] = self.clock().isoformat(timespec="seconds")
        record = self.store.create("payments", data)
        logger.info(
            "记录支付: order_id=%s, type=%s, amount=%s, status=%s",
            order_id, payment_type, data["amount"], status,
        )
        return Payment.from_record(record)

    def get_payment(self, payment_id: int) -> Payment:
        record = self.store.find_by_id("payments", payment_id)
        if not record:
            raise NotFoundError("支付记录不存在", code=ErrorCode.PAYMENT_NOT_FOUND,
                                details={"payment_id": payment_id})
        return Payment.from_record(record)

    def _change_status(self, payment_id: int, new_status: str, extra: dict) -> Payment:
        payment = self.get_payment(payment_id)
        if new_status not in _ALLOWED_STATUS_CHANGES.get(payment.status, ()):
            raise InvalidStateError(
                f"支付记录状态 {payment.status} 不能变更为 {new_status}",
                code=ErrorCode.PAYMENT_INVALID_STATUS,
                details={"payment_id": payment_id, "status": payment.status},
            )
        record = self.store.update("payments", payment_id, {"status": new_status, **extra})
        logger.info("支付状态变更: payment_id=%s, %s -> %s", payment_id, payment.status, new_status)
        return Payment.from_record(record)

    def mark_paid(self, payment_id: int, channel: Optional[str] = None) -> Payment:
        extra = {"paid_at": self.clock().isoformat(timespec="seconds")}
        if channel:
            if channel not in PAYMENT_CHANNELS:
                raise ValidationError(f"支付渠道无效: {channel}", field="channel")
            extra["channel"] = channel
        return self._change_status(payment_id, "paid", extra)

    def mark_failed(self, payment_id: int) -> Payment:
        return self._change_status(payment_id, "failed", {})

    def mark_refunded(self, payment_id: int) -> Payment:
        return self._change_status(
            payment_id, "refunded",
            {"refunded_at": self.clock().isoformat(timespec="seconds")},
        )

    def list_for_order(
        self,
        order_id: int,
        payment_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Payment]:
        where = {"order_id": order_id}
        if payment_type:
            where["type"] = payment_type
        if status:
            where["status"] = status
        return [
            Payment.from_record(r)
            for r in self.store.find("payments", where, order_by="id ASC")
        ]

    def sum_paid(self, order_id: int, payment_type: str) -> Decimal:
        """某订单某类型已支付记录金额合计。"""
        total = Decimal("0.00")
        for payment in self.list_for_order(order_id, payment_type, "paid"):
            total += payment.amount
        return total
