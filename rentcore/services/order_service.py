"""
订单服务模块：订单创建、状态流转、改址。

订单状态：
    NEW -> PAID -> TO_SHIP -> SHIPPED -> IN_RENT -> RETURNING -> RETURNED -> COMPLETED
    NEW / PAID / TO_SHIP 可取消（CANCELED）。PAID 立即自动推进到 TO_SHIP。
    COMPLETED、CANCELED 为终态，进入终态时释放授信冻结额度。

所有写操作都在同一个存储事务里完成：授信冻结与订单写入要么一起提交，要么一起回滚。
"""

import logging
import os
import random
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from rentcore.errors import (
    AddressChangeLimitError,
    AddressNotEditableError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    OrderInvalidStatusError,
    OrderNotFoundError,
    OverdueUnpaidError,
    RegionBlacklistedError,
    ValidationError,
)
from rentcore.models.schemas import FeeResult, Order, ShippingTemplate
from rentcore.services.clock import (
    RENT_TIMEZONE,
    Clock,
    ceil_days,
    local_now,
    next_local_midnight,
    to_local,
)
from rentcore.services.credit_ledger import CreditLedger
from rentcore.services.payment_ledger import PaymentLedger
from rentcore.services.shipping import ShippingTemplateService, calculate_shipping_fee
from rentcore.services.shipping_address import resolve_shipping_address
from rentcore.store import RecordStore, to_money

load_dotenv()

logger = logging.getLogger(__name__)

MAX_ADDRESS_CHANGES = int(os.getenv("MAX_ADDRESS_CHANGES", "2"))

ORDER_STATUSES = (
    "NEW", "PAID", "TO_SHIP", "SHIPPED", "IN_RENT",
    "RETURNING", "RETURNED", "COMPLETED", "CANCELED",
)
TERMINAL_STATUSES = ("COMPLETED", "CANCELED")
ADDRESS_EDITABLE_STATUSES = ("NEW", "PAID", "TO_SHIP")

ALLOWED_TRANSITIONS = {
    "NEW": ("PAID", "CANCELED"),
    "PAID": ("TO_SHIP", "CANCELED"),
    "TO_SHIP": ("SHIPPED", "CANCELED"),
    "SHIPPED": ("IN_RENT",),
    "IN_RENT": ("RETURNING",),
    "RETURNING": ("RETURNED",),
    "RETURNED": ("COMPLETED",),
}

SHIPPABLE_DEVICE_STATUSES = ("in_stock", "in_transit")

SYSTEM_OPERATOR = "system"


class OrderCreateError(InvalidStateError):
    """订单创建失败通用异常。"""


def base_total(order: dict) -> Decimal:
    """租金 + 运费快照 + 运费调整（不含逾期费）。"""
    return (
        to_money(order["daily_fee_snapshot"]) * int(order["rent_days"])
        + to_money(order["shipping_fee_snapshot"])
        + to_money(order.get("shipping_fee_adjustment"))
    )


def _date_str(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


# ── 创建流水线 ────────────────────────────────────────────

@dataclass
class CreateContext:
    """创建流水线在各步骤之间传递的状态。"""

    data: dict
    operator: Any = None
    customer: Optional[dict] = None
    sku: Optional[dict] = None
    template: Optional[ShippingTemplate] = None
    shipping_address: Optional[dict] = None
    fee: Optional[FeeResult] = None
    rent_days: int = 0
    return_address: Optional[dict] = None
    order: Optional[dict] = None
    completed_steps: list = field(default_factory=list)


class Pipeline:
    """按顺序执行具名步骤；任一步骤抛异常即中止，已执行步骤由外层事务回滚。"""

    def __init__(self, steps: list[tuple[str, Callable[[CreateContext], None]]]):
        self.steps = steps

    @property
    def step_names(self) -> list[str]:
        return [name for name, _ in self.steps]

    def run(self, ctx: CreateContext) -> CreateContext:
        for name, step in self.steps:
            logger.debug("执行订单创建步骤: %s", name)
            step(ctx)
            ctx.completed_steps.append(name)
        return ctx


class OrderService:
    """订单服务：创建、状态流转、改址、查询。"""

    def __init__(
        self,
        store: RecordStore,
        clock: Clock = local_now,
        credit_ledger: Optional[CreditLedger] = None,
        payment_ledger: Optional[PaymentLedger] = None,
        template_service: Optional[ShippingTemplateService] = None,
    ):
        self.store = store
        self.clock = clock
        self.credits = credit_ledger or CreditLedger(store, clock)
        self.payments = payment_ledger or PaymentLedger(store, clock)
        self.templates = template_service or ShippingTemplateService(store)
        self.create_pipeline = Pipeline([
            ("validate", self._step_validate),
            ("snapshot_sku", self._step_snapshot_sku),
            ("resolve_address", self._step_resolve_address),
            ("price", self._step_price),
            ("return_address", self._step_return_address),
            ("hold_credit", self._step_hold_credit),
            ("persist", self._step_persist),
            ("audit", self._step_audit),
        ])
        self._transition_handlers = {
            "PAID": self._on_paid,
            "SHIPPED": self._on_shipped,
            "IN_RENT": self._on_in_rent,
            "RETURNING": self._on_returning,
            "RETURNED": self._on_returned,
            "COMPLETED": self._on_completed,
            "CANCELED": self._on_canceled,
        }

    def _timestamp(self) -> str:
        return self.clock().isoformat(timespec="seconds")

    def generate_order_no(self) -> str:
        """
        生成唯一订单号：ORD + 时间戳 + 随机数。
        格式：ORD + YYYYMMDDHHMMSSffffff + 6位随机数字，确保唯一。
        """
        for _ in range(10):
            ts = datetime.now().strftime("%Y%m%d%H%M%S%f")
            rand = f"{random.randint(0, 999999):06d}"
            order_no = f"ORD{ts}{rand}"
            if not self.store.find_one("orders", {"order_no": order_no}):
                return order_no
        raise OrderCreateError("无法生成唯一订单号，请重试")

    # ── 创建 ──────────────────────────────────────────────

    def create_order(self, data: dict, operator: Any = None) -> Order:
        """
        创建订单。

        Args:
            data: customer_id, merchant_sku_id, rent_start_date, rent_end_date,
                  shipping_address，可选 return_address、notes。
            operator: 操作人（写入状态历史）。

        Returns:
            新建的 Order（status=NEW）。

        Raises:
            NotFoundError / ValidationError / RegionBlacklistedError /
            CreditNotFoundError / CreditInvalidStateError / CreditInsufficientError:
            任一失败时订单不落库，授信不冻结。
        """
        ctx = CreateContext(data=dict(data), operator=operator)
        with self.store.transaction():
            self.create_pipeline.run(ctx)
        order = Order.from_record(ctx.order)
        logger.info(
            "订单创建成功: order_no=%s, customer_id=%s, merchant_id=%s, total=%s",
            order.order_no, order.customer_id, order.merchant_id, order.order_total_amount,
        )
        return order

    def _step_validate(self, ctx: CreateContext) -> None:
        data = ctx.data
        for key, label in (
            ("customer_id", "下单用户"),
            ("merchant_sku_id", "租赁SKU"),
            ("rent_start_date", "租期开始日期"),
            ("rent_end_date", "租期结束日期"),
        ):
            if data.get(key) in (None, ""):
                raise ValidationError(f"缺少{label}({key})", field=key)

        customer = self.store.find_by_id("users", data["customer_id"])
        if not customer:
            raise NotFoundError("下单用户不存在", code=ErrorCode.USER_NOT_FOUND,
                                details={"customer_id": data["customer_id"]})
        ctx.customer = customer

        try:
            start = to_local(data["rent_start_date"])
            end = to_local(data["rent_end_date"])
        except (TypeError, ValueError, AttributeError):
            raise ValidationError("租期日期格式错误", field="rent_start_date") from None
        rent_days = ceil_days(start, end)
        if rent_days <= 0:
            raise ValidationError("租期结束日期必须晚于开始日期", field="rent_end_date")
        ctx.rent_days = rent_days

    def _step_snapshot_sku(self, ctx: CreateContext) -> None:
        sku = self.store.find_by_id("merchant_skus", ctx.data["merchant_sku_id"])
        if not sku:
            raise NotFoundError("SKU不存在", code=ErrorCode.SKU_NOT_FOUND,
                                details={"merchant_sku_id": ctx.data["merchant_sku_id"]})
        if sku["status"] != "active":
            raise InvalidStateError(
                f"SKU暂时无法租赁: {sku['status']}",
                code=ErrorCode.SKU_UNAVAILABLE,
                details={"merchant_sku_id": sku["id"]},
            )
        ctx.sku = sku
        ctx.template = self.templates.find_usable_template(sku)

    def _step_resolve_address(self, ctx: CreateContext) -> None:
        ctx.shipping_address = resolve_shipping_address(ctx.data.get("shipping_address"))

    def _step_price(self, ctx: CreateContext) -> None:
        fee = calculate_shipping_fee(ctx.template, ctx.shipping_address)
        if fee.is_blacklisted:
            raise RegionBlacklistedError(
                f"该地址不在配送范围内: {fee.blacklist_reason}",
                details={"region_code": ctx.shipping_address.get("region_code")},
            )
        ctx.fee = fee

    def _step_return_address(self, ctx: CreateContext) -> None:
        if ctx.data.get("return_address"):
            ctx.return_address = ctx.data["return_address"]
            return
        info = self.store.find_one("return_info", {
            "merchant_id": ctx.sku["merchant_id"],
            "is_default": True,
            "status": "active",
        })
        if not info:
            raise NotFoundError(
                "商户未设置归还地址，请联系商户",
                code=ErrorCode.RETURN_INFO_NOT_FOUND,
                details={"merchant_id": ctx.sku["merchant_id"]},
            )
        ctx.return_address = {
            key: info.get(key)
            for key in ("contact_name", "contact_phone", "province", "city", "district", "address")
        }

    def _step_hold_credit(self, ctx: CreateContext) -> None:
        self.credits.freeze_credit(
            ctx.customer["id"], ctx.sku["merchant_id"], ctx.sku["device_value"]
        )

    def _step_persist(self, ctx: CreateContext) -> None:
        sku = ctx.sku
        order = {
            "order_no": self.generate_order_no(),
            "customer_id": ctx.customer["id"],
            "merchant_id": sku["merchant_id"],
            "merchant_sku_id": sku["id"],
            "status": "NEW",
            "rent_start_date": _date_str(ctx.data["rent_start_date"]),
            "rent_end_date": _date_str(ctx.data["rent_end_date"]),
            "rent_days": ctx.rent_days,
            "timezone": RENT_TIMEZONE,
            "daily_fee_snapshot": sku["daily_fee"],
            "device_value_snapshot": sku["device_value"],
            "shipping_fee_snapshot": ctx.fee.fee,
            "shipping_fee_adjustment": Decimal("0.00"),
            "shipping_template_id": ctx.template.id,
            "shipping_template_version": ctx.template.version,
            "credit_hold_amount": sku["device_value"],
            "shipping_address": ctx.shipping_address,
            "return_address": ctx.return_address,
            "address_change_count": 0,
            "address_change_history": [],
            "overdue_amount": Decimal("0.00"),
            "notes": ctx.data.get("notes"),
            "status_history": [],
        }
        order["order_total_amount"] = base_total(order)
        ctx.order = self.store.create("orders", order)

    def _step_audit(self, ctx: CreateContext) -> None:
        order = ctx.order
        history = [self._history_entry("NEW", ctx.operator, "订单创建")]
        ctx.order = self.store.update("orders", order["id"], {"status_history": history})

        rent = to_money(order["daily_fee_snapshot"]) * order["rent_days"]
        self.payments.record_payment(
            order["id"],
            "rent",
            rent + order["shipping_fee_snapshot"],
            amount_detail={"rent": rent, "shipping": order["shipping_fee_snapshot"]},
        )

    # ── 查询 ──────────────────────────────────────────────

    def _load(self, order_id: int) -> dict:
        record = self.store.find_by_id("orders", order_id)
        if not record:
            raise OrderNotFoundError("订单不存在", details={"order_id": order_id})
        return record

    def get_order(self, order_id: int) -> Order:
        return Order.from_record(self._load(order_id))

    def list_orders(self, where: Optional[dict] = None, limit: Optional[int] = None) -> list[Order]:
        return [
            Order.from_record(r)
            for r in self.store.find("orders", where, order_by="id DESC", limit=limit)
        ]

    # ── 状态流转 ──────────────────────────────────────────

    def _history_entry(self, status: str, operator: Any, notes: Optional[str]) -> dict:
        return {
            "status": status,
            "changed_at": self._timestamp(),
            "operator": operator,
            "notes": notes,
        }

    def transition_order(
        self,
        order_id: int,
        new_status: str,
        patch: Optional[dict] = None,
        operator: Any = None,
        force: bool = False,
    ) -> Order:
        """
        订单状态流转。

        Args:
            patch: 随流转提交的字段，如 device_sn / shipping_no / shipping_date（发货），
                   return_no / return_confirm_time（归还），channel（支付），notes。
            force: 跳过流转表（仅平台角色，由调用方鉴权）；终态订单仍不可变更，
                   完成前的逾期费校验仍然生效。
        """
        patch = dict(patch or {})
        if new_status not in ORDER_STATUSES:
            raise ValidationError(f"订单状态无效: {new_status}", field="status")

        with self.store.transaction():
            order = self._load(order_id)
            current = order["status"]
            if current in TERMINAL_STATUSES:
                raise OrderInvalidStatusError(
                    f"订单已处于终态 {current}，不能变更",
                    details={"order_id": order_id, "status": current},
                )
            if new_status == current or (
                not force and new_status not in ALLOWED_TRANSITIONS.get(current, ())
            ):
                raise OrderInvalidStatusError(
                    f"订单状态不允许从 {current} 变更为 {new_status}",
                    details={"order_id": order_id, "status": current, "target": new_status},
                )

            changes: dict = {}
            handler = self._transition_handlers.get(new_status)
            if handler:
                handler(order, patch, changes)

            history = list(order["status_history"])
            history.append(self._history_entry(new_status, operator, patch.get("notes")))
            final_status = new_status
            if new_status == "PAID":
                history.append(self._history_entry("TO_SHIP", SYSTEM_OPERATOR, "支付完成，自动进入待发货"))
                final_status = "TO_SHIP"

            changes["status"] = final_status
            changes["status_history"] = history
            updated = self.store.update("orders", order_id, changes)

            if final_status in TERMINAL_STATUSES:
                self.credits.release_credit(
                    updated["customer_id"], updated["merchant_id"], updated["credit_hold_amount"]
                )

        logger.info(
            "订单状态变更: order_no=%s, %s -> %s, operator=%s",
            updated["order_no"], current, final_status, operator,
        )
        return Order.from_record(updated)

    def _on_paid(self, order: dict, patch: dict, changes: dict) -> None:
        pending = self.payments.list_for_order(order["id"], "rent", "pending")
        for payment in pending:
            self.payments.mark_paid(payment.id, patch.get("channel"))
        if not pending and self.payments.sum_paid(order["id"], "rent") == 0:
            rent = to_money(order["daily_fee_snapshot"]) * order["rent_days"]
            self.payments.record_payment(
                order["id"], "rent", rent + order["shipping_fee_snapshot"],
                status="paid", channel=patch.get("channel"),
                amount_detail={"rent": rent, "shipping": order["shipping_fee_snapshot"]},
            )

    def _patch_time(self, patch: dict, key: str) -> datetime:
        """流转附带的时间字段，缺省为当前时间。"""
        value = patch.get(key) or self.clock()
        try:
            return to_local(value)
        except (TypeError, ValueError, AttributeError):
            raise ValidationError(f"时间格式错误: {value!r}", field=key) from None

    def _on_shipped(self, order: dict, patch: dict, changes: dict) -> None:
        shipping_date = self._patch_time(patch, "shipping_date")
        changes["shipping_date"] = shipping_date.isoformat(timespec="seconds")
        if patch.get("shipping_no"):
            changes["shipping_no"] = patch["shipping_no"]
        # 计费从发货次日零点开始
        if not order.get("actual_start_date"):
            changes["actual_start_date"] = next_local_midnight(shipping_date).isoformat()

        device_sn = (patch.get("device_sn") or "").strip()
        if device_sn:
            changes["device_id"] = self._bind_device(order, device_sn)

    def _bind_device(self, order: dict, sn: str) -> int:
        device = self.store.find_one("devices", {"sn": sn})
        if not device:
            device = self.store.create("devices", {
                "merchant_sku_id": order["merchant_sku_id"],
                "sn": sn,
                "status": "in_transit",
                "current_order_id": order["id"],
                "rental_count": 0,
            })
            logger.info("自动登记设备: sn=%s, order_no=%s", sn, order["order_no"])
            return device["id"]

        if device["merchant_sku_id"] != order["merchant_sku_id"]:
            raise ValidationError(
                f"设备 {sn} 不属于该订单的SKU",
                field="device_sn",
                code=ErrorCode.DEVICE_UNAVAILABLE,
            )
        if device["status"] not in SHIPPABLE_DEVICE_STATUSES or (
            device.get("current_order_id") not in (None, order["id"])
        ):
            raise InvalidStateError(
                f"设备 {sn} 当前不可发货: {device['status']}",
                code=ErrorCode.DEVICE_UNAVAILABLE,
                details={"device_id": device["id"], "status": device["status"]},
            )
        self.store.update("devices", device["id"], {
            "status": "in_transit",
            "current_order_id": order["id"],
        })
        return device["id"]

    def _on_in_rent(self, order: dict, patch: dict, changes: dict) -> None:
        if order.get("device_id"):
            self.store.update("devices", order["device_id"], {"status": "in_rent"})

    def _on_returning(self, order: dict, patch: dict, changes: dict) -> None:
        if patch.get("return_no"):
            changes["return_no"] = patch["return_no"]

    def _on_returned(self, order: dict, patch: dict, changes: dict) -> None:
        confirm_time = self._patch_time(patch, "return_confirm_time")
        changes["return_confirm_time"] = confirm_time.isoformat(timespec="seconds")
        if patch.get("return_no"):
            changes["return_no"] = patch["return_no"]

        # 逾期每次从头计算
        start = order.get("actual_start_date") or order["rent_start_date"]
        actual_days = ceil_days(to_local(start), confirm_time)
        daily_fee = to_money(order["daily_fee_snapshot"])
        if actual_days > order["rent_days"]:
            overdue_days = actual_days - order["rent_days"]
            overdue_amount = daily_fee * overdue_days
        else:
            overdue_days = 0
            overdue_amount = Decimal("0.00")
        changes.update({
            "is_overdue": overdue_days > 0,
            "overdue_days": overdue_days,
            "overdue_amount": overdue_amount,
            "order_total_amount": base_total(order) + overdue_amount,
        })

        if overdue_amount > 0:
            recorded = sum(
                (p.amount for p in self.payments.list_for_order(order["id"], "overdue")
                 if p.status in ("pending", "paid")),
                Decimal("0.00"),
            )
            if recorded < overdue_amount:
                self.payments.record_payment(
                    order["id"], "overdue", overdue_amount - recorded,
                    amount_detail={"overdue_days": overdue_days, "daily_fee": daily_fee},
                )
            logger.info(
                "订单逾期: order_no=%s, overdue_days=%s, overdue_amount=%s",
                order["order_no"], overdue_days, overdue_amount,
            )

        if order.get("device_id"):
            device = self.store.find_by_id("devices", order["device_id"])
            if device:
                self.store.update("devices", device["id"], {
                    "status": "in_stock",
                    "current_order_id": None,
                    "rental_count": (device.get("rental_count") or 0) + 1,
                })

    def _on_completed(self, order: dict, patch: dict, changes: dict) -> None:
        overdue_amount = to_money(order.get("overdue_amount"))
        if not (order.get("is_overdue") and overdue_amount > 0):
            return
        paid = self.payments.sum_paid(order["id"], "overdue")
        if paid < overdue_amount:
            remaining = overdue_amount - paid
            raise OverdueUnpaidError(
                f"逾期费用未结清，还需支付 {remaining}元",
                details={
                    "overdue_amount": str(overdue_amount),
                    "paid": str(paid),
                    "remaining": str(remaining),
                },
            )

    def _on_canceled(self, order: dict, patch: dict, changes: dict) -> None:
        for payment in self.payments.list_for_order(order["id"], "rent", "pending"):
            self.payments.mark_failed(payment.id)
        paid = self.payments.sum_paid(order["id"], "rent")
        if paid > 0:
            self.payments.record_payment(
                order["id"], "rent_canceled", -paid,
                notes=patch.get("notes") or "订单取消退款",
            )

        if order.get("device_id"):
            self.store.update("devices", order["device_id"], {
                "status": "in_stock",
                "current_order_id": None,
            })

    # ── 改址 ──────────────────────────────────────────────

    def change_order_address(
        self,
        order_id: int,
        new_address: dict,
        operator: Any = None,
    ) -> Order:
        """
        修改收货地址并重新计算运费。

        NEW 状态直接替换运费快照；PAID / TO_SHIP 状态运费快照不变，
        差额累加到 shipping_fee_adjustment，并生成补差 / 退差支付记录。
        """
        with self.store.transaction():
            order = self._load(order_id)
            if order["address_change_count"] >= MAX_ADDRESS_CHANGES:
                raise AddressChangeLimitError(
                    f"地址修改次数已达上限（{MAX_ADDRESS_CHANGES}次）",
                    details={"address_change_count": order["address_change_count"]},
                )
            if order["status"] not in ADDRESS_EDITABLE_STATUSES:
                raise AddressNotEditableError(
                    f"当前订单状态不允许修改地址: {order['status']}",
                    details={"status": order["status"]},
                )

            resolved = resolve_shipping_address(new_address)
            template = self._order_template(order)
            fee = calculate_shipping_fee(template, resolved)
            if fee.is_blacklisted:
                raise RegionBlacklistedError(
                    f"该地址不在配送范围内: {fee.blacklist_reason}",
                    details={"region_code": resolved.get("region_code")},
                )

            snapshot = to_money(order["shipping_fee_snapshot"])
            adjustment = to_money(order.get("shipping_fee_adjustment"))
            old_fee = snapshot + adjustment
            delta = fee.fee - old_fee

            changes = {}
            if order["status"] == "NEW":
                changes["shipping_fee_snapshot"] = fee.fee
            else:
                changes["shipping_fee_adjustment"] = adjustment + delta
            repriced = {**order, **changes}
            changes["order_total_amount"] = base_total(repriced) + to_money(order.get("overdue_amount"))

            history = list(order["address_change_history"])
            history.append({
                "changed_at": self._timestamp(),
                "operator": operator,
                "status": order["status"],
                "old_address": order["shipping_address"],
                "new_address": resolved,
                "old_fee": old_fee,
                "new_fee": fee.fee,
                "fee_delta": delta,
            })
            changes.update({
                "shipping_address": resolved,
                "address_change_history": history,
                "address_change_count": order["address_change_count"] + 1,
            })
            updated = self.store.update("orders", order_id, changes)

            if order["status"] == "NEW":
                # 待支付租金作废后按新运费重开一笔
                pending = self.payments.list_for_order(order_id, "rent", "pending")
                for payment in pending:
                    self.payments.mark_failed(payment.id)
                if pending:
                    rent = to_money(order["daily_fee_snapshot"]) * order["rent_days"]
                    self.payments.record_payment(
                        order_id, "rent", rent + fee.fee,
                        amount_detail={"rent": rent, "shipping": fee.fee},
                    )
            elif delta != 0:
                self.payments.record_payment(
                    order_id,
                    "addr_up" if delta > 0 else "addr_down",
                    delta,
                    amount_detail={"old_fee": old_fee, "new_fee": fee.fee},
                    notes="改址运费补差" if delta > 0 else "改址运费退差",
                )

        logger.info(
            "订单改址: order_no=%s, fee %s -> %s, count=%s",
            updated["order_no"], old_fee, fee.fee, updated["address_change_count"],
        )
        return Order.from_record(updated)

    def _order_template(self, order: dict) -> ShippingTemplate:
        """改址计价使用下单时记录的运费模板；模板已删除时退回 SKU 的可用模板。"""
        template_id = order.get("shipping_template_id")
        if template_id:
            template = self.templates.get_template(template_id)
            if template:
                return template
        sku = self.store.find_by_id("merchant_skus", order["merchant_sku_id"])
        if not sku:
            raise NotFoundError("SKU不存在", code=ErrorCode.SKU_NOT_FOUND,
                                details={"merchant_sku_id": order["merchant_sku_id"]})
        return self.templates.find_usable_template(sku)
