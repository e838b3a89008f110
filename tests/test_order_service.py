"""订单服务单元测试：创建、状态流转、改址。"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

# 在导入 rentcore 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="order_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import rentcore.database as _db_mod
from rentcore.database import drop_all, init_db
from rentcore.errors import (
    AddressChangeLimitError,
    AddressNotEditableError,
    CreditInsufficientError,
    CreditInvalidStateError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    OrderInvalidStatusError,
    OrderNotFoundError,
    OverdueUnpaidError,
    RegionBlacklistedError,
    ValidationError,
)
from rentcore.services.catalog_service import CatalogService
from rentcore.services.credit_ledger import CreditLedger
from rentcore.services.order_service import MAX_ADDRESS_CHANGES, OrderService
from rentcore.services.payment_ledger import PaymentLedger
from rentcore.services.shipping import ShippingTemplateService
from rentcore.store import RecordStore

TZ = ZoneInfo("Asia/Shanghai")

SHENZHEN = {
    "contact_name": "张三",
    "contact_phone": "13800000000",
    "province": "广东省",
    "city": "深圳市",
    "district": "南山区",
    "address": "科技园南路1号",
}

GUANGZHOU = {
    "contact_name": "张三",
    "contact_phone": "13800000000",
    "province": "广东省",
    "city": "广州市",
    "district": "天河区",
    "address": "体育西路1号",
}

URUMQI = {
    "contact_name": "张三",
    "contact_phone": "13800000000",
    "region_code": "650102",
    "address": "解放北路1号",
}


class FakeClock:
    """可拨动的固定时钟。"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    drop_all(conn)
    conn.close()
    init_db()
    yield


@pytest.fixture
def store():
    s = RecordStore.open()
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 10, 22, 10, 0, tzinfo=TZ))


@pytest.fixture
def svc(store, clock):
    return OrderService(store, clock=clock)


@pytest.fixture
def world(store):
    """商户、用户、运费模板、SKU、归还地址、授信。"""
    catalog = CatalogService(store)
    merchant = catalog.create_merchant("租机小铺")
    customer = catalog.create_user("张三", "customer")
    template = ShippingTemplateService(store).create_template(
        merchant["id"], "默认模板", "12",
        region_rules=[
            {"region_code_path": "440000", "fee": "10", "region_name": "广东省"},
            {"region_code_path": "440300", "fee": "5", "region_name": "深圳市"},
        ],
        blacklist_regions=[
            {"region_code_path": "650000", "region_name": "新疆", "reason": "偏远地区暂不配送"},
        ],
        is_default=True,
    )
    sku = catalog.create_sku(merchant["id"], "索尼 A7M4", "10", "1000")
    catalog.create_return_info(
        merchant["id"], "李四", "13900000000", "广东省", "深圳市", "福田路1号",
        district="福田区", is_default=True,
    )
    credit, _ = CreditLedger(store).grant_credit(customer["id"], merchant["id"], "5000")
    return {
        "merchant": merchant,
        "customer": customer,
        "template": template,
        "sku": sku,
        "credit": credit,
    }


def _order_input(world, **overrides):
    data = {
        "customer_id": world["customer"]["id"],
        "merchant_sku_id": world["sku"]["id"],
        "rent_start_date": "2025-10-23",
        "rent_end_date": "2025-10-30",
        "shipping_address": dict(SHENZHEN),
    }
    data.update(overrides)
    return data


def _used_credit(store, world):
    return store.find_by_id("credits", world["credit"].id)["used_credit"]


def _ship(svc, order_id, clock, **patch_fields):
    svc.transition_order(order_id, "PAID", operator=1)
    clock.now = datetime(2025, 10, 24, 15, 30, tzinfo=TZ)
    return svc.transition_order(order_id, "SHIPPED", patch_fields or None, operator=2)


def _to_returning(svc, order_id, clock, device_sn="SN-001"):
    _ship(svc, order_id, clock, device_sn=device_sn, shipping_no="SF123")
    svc.transition_order(order_id, "IN_RENT")
    return svc.transition_order(order_id, "RETURNING", {"return_no": "SF456"})


# ── 创建订单 ──────────────────────────────────────────────


class TestCreateOrder:

    def test_create_snapshots_and_totals(self, svc, world, store):
        order = svc.create_order(_order_input(world), operator=world["customer"]["id"])
        assert order.status == "NEW"
        assert order.rent_days == 7
        assert order.daily_fee_snapshot == Decimal("10.00")
        assert order.device_value_snapshot == Decimal("1000.00")
        assert order.shipping_fee_snapshot == Decimal("5.00")
        assert order.shipping_fee_adjustment == Decimal("0.00")
        assert order.credit_hold_amount == Decimal("1000.00")
        assert order.order_total_amount == Decimal("75.00")
        assert order.merchant_id == world["merchant"]["id"]
        assert order.shipping_template_id == world["template"].id
        assert order.shipping_template_version == 1
        assert order.timezone == "Asia/Shanghai"

    def test_rent_days_example(self, svc, world):
        order = svc.create_order(_order_input(world))
        assert order.rent_days == 7

    def test_order_no_format(self, svc, world):
        order = svc.create_order(_order_input(world))
        assert order.order_no.startswith("ORD")
        assert len(order.order_no) == 29
        assert order.order_no[3:].isdigit()

    def test_freezes_credit(self, svc, world, store):
        svc.create_order(_order_input(world))
        assert _used_credit(store, world) == Decimal("1000.00")

    def test_region_code_filled_from_names(self, svc, world):
        order = svc.create_order(_order_input(world))
        assert order.shipping_address["region_code"] == "440305"

    def test_names_filled_from_region_code(self, svc, world):
        address = {
            "contact_name": "张三",
            "contact_phone": "13800000000",
            "region_code": "440106",
            "address": "体育西路1号",
        }
        order = svc.create_order(_order_input(world, shipping_address=address))
        assert order.shipping_address["province"] == "广东省"
        assert order.shipping_address["city"] == "广州市"
        assert order.shipping_address["district"] == "天河区"
        assert order.shipping_fee_snapshot == Decimal("10.00")

    def test_full_address_fallback(self, svc, world):
        address = {
            "contact_name": "张三",
            "contact_phone": "13800000000",
            "full_address": "广东省深圳市南山区科技园南路1号",
        }
        order = svc.create_order(_order_input(world, shipping_address=address))
        assert order.shipping_address["district"] == "南山区"
        assert order.shipping_address["address"] == "科技园南路1号"
        assert order.shipping_address["region_code"] == "440305"

    def test_region_code_governs_when_names_disagree(self, svc, world):
        """名称与编码不一致时按编码计价，名称保留。"""
        address = dict(GUANGZHOU, region_code="440305")
        order = svc.create_order(_order_input(world, shipping_address=address))
        assert order.shipping_fee_snapshot == Decimal("5.00")
        assert order.shipping_address["city"] == "广州市"

    def test_return_address_from_default_return_info(self, svc, world):
        order = svc.create_order(_order_input(world))
        assert order.return_address["contact_name"] == "李四"
        assert order.return_address["district"] == "福田区"

    def test_initial_status_history(self, svc, world):
        order = svc.create_order(_order_input(world), operator=7)
        assert len(order.status_history) == 1
        assert order.status_history[0]["status"] == "NEW"
        assert order.status_history[0]["operator"] == 7

    def test_pending_rent_payment(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        payments = PaymentLedger(store).list_for_order(order.id)
        assert len(payments) == 1
        assert payments[0].type == "rent"
        assert payments[0].status == "pending"
        assert payments[0].amount == Decimal("75.00")
        assert payments[0].amount_detail == {"rent": "70.00", "shipping": "5.00"}

    def test_pipeline_step_order(self, svc):
        assert svc.create_pipeline.step_names == [
            "validate", "snapshot_sku", "resolve_address", "price",
            "return_address", "hold_credit", "persist", "audit",
        ]


class TestCreateOrderFailures:

    def test_insufficient_credit_persists_nothing(self, svc, world, store):
        CreditLedger(store).adjust_limit(world["credit"].id, "500")
        with pytest.raises(CreditInsufficientError):
            svc.create_order(_order_input(world))
        assert store.find("orders") == []
        assert store.find("payments") == []
        assert _used_credit(store, world) == Decimal("0.00")

    def test_disabled_credit(self, svc, world, store):
        CreditLedger(store).set_status(world["credit"].id, "disabled")
        with pytest.raises(CreditInvalidStateError):
            svc.create_order(_order_input(world))
        assert store.find("orders") == []

    def test_failure_after_freeze_rolls_back_credit(self, svc, world, store):
        """冻结之后的步骤失败时，冻结一并回滚。"""
        with patch.object(svc, "generate_order_no", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                svc.create_order(_order_input(world))
        assert _used_credit(store, world) == Decimal("0.00")
        assert store.find("orders") == []

    def test_blacklisted_region(self, svc, world, store):
        with pytest.raises(RegionBlacklistedError) as exc:
            svc.create_order(_order_input(world, shipping_address=dict(URUMQI)))
        assert "偏远地区暂不配送" in exc.value.message
        assert _used_credit(store, world) == Decimal("0.00")

    @pytest.mark.parametrize("overrides, field", [
        ({"province": None, "city": None, "district": None}, "province"),
        ({"city": None, "district": "不存在区"}, "city"),
        ({"district": None}, "district"),
    ])
    def test_missing_region_level(self, svc, world, overrides, field):
        address = dict(SHENZHEN, **overrides)
        with pytest.raises(ValidationError) as exc:
            svc.create_order(_order_input(world, shipping_address=address))
        assert exc.value.details["field"] == field

    def test_missing_city_filled_from_district(self, svc, world):
        address = dict(SHENZHEN, city=None)
        order = svc.create_order(_order_input(world, shipping_address=address))
        assert order.shipping_address["city"] == "深圳市"
        assert order.shipping_address["region_code"] == "440305"

    def test_unknown_region_rejected(self, svc, world, store):
        """省市区都填了但查不到地区编码，不能绕过黑名单按默认运费下单。"""
        address = dict(
            SHENZHEN, province="火星省", city="奥林匹斯市", district="某区",
        )
        with pytest.raises(ValidationError) as exc:
            svc.create_order(_order_input(world, shipping_address=address))
        assert exc.value.details["field"] == "region_code"
        assert exc.value.code == ErrorCode.ADDRESS_INVALID
        assert store.find("orders") == []
        assert _used_credit(store, world) == Decimal("0.00")

    @pytest.mark.parametrize("field", ["contact_name", "contact_phone", "address"])
    def test_missing_contact_fields(self, svc, world, field):
        address = dict(SHENZHEN)
        address.pop(field)
        with pytest.raises(ValidationError) as exc:
            svc.create_order(_order_input(world, shipping_address=address))
        assert exc.value.details["field"] == field

    def test_missing_shipping_address(self, svc, world):
        with pytest.raises(ValidationError):
            svc.create_order(_order_input(world, shipping_address=None))

    def test_end_before_start(self, svc, world):
        with pytest.raises(ValidationError) as exc:
            svc.create_order(_order_input(world, rent_end_date="2025-10-22"))
        assert exc.value.details["field"] == "rent_end_date"

    def test_missing_sku(self, svc, world):
        with pytest.raises(NotFoundError) as exc:
            svc.create_order(_order_input(world, merchant_sku_id=999))
        assert exc.value.code == ErrorCode.SKU_NOT_FOUND

    def test_inactive_sku(self, svc, world, store):
        store.update("merchant_skus", world["sku"]["id"], {"status": "inactive"})
        with pytest.raises(InvalidStateError) as exc:
            svc.create_order(_order_input(world))
        assert exc.value.code == ErrorCode.SKU_UNAVAILABLE

    def test_no_usable_template(self, svc, world, store):
        store.update("shipping_templates", world["template"].id, {"status": "inactive"})
        with pytest.raises(NotFoundError) as exc:
            svc.create_order(_order_input(world))
        assert exc.value.code == ErrorCode.SHIPPING_TEMPLATE_NOT_FOUND

    def test_no_return_info(self, svc, world, store):
        store.update_where("return_info", {"merchant_id": world["merchant"]["id"]},
                           {"is_default": False})
        with pytest.raises(NotFoundError) as exc:
            svc.create_order(_order_input(world))
        assert exc.value.code == ErrorCode.RETURN_INFO_NOT_FOUND
        assert _used_credit(store, world) == Decimal("0.00")

    def test_missing_customer(self, svc, world):
        with pytest.raises(NotFoundError) as exc:
            svc.create_order(_order_input(world, customer_id=999))
        assert exc.value.code == ErrorCode.USER_NOT_FOUND


# ── 状态流转 ──────────────────────────────────────────────


class TestTransitions:

    def test_paid_auto_advances_to_to_ship(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        order = svc.transition_order(order.id, "PAID", {"channel": "wechat"}, operator=1)
        assert order.status == "TO_SHIP"
        assert [h["status"] for h in order.status_history] == ["NEW", "PAID", "TO_SHIP"]
        assert order.status_history[-1]["operator"] == "system"
        rent = PaymentLedger(store).list_for_order(order.id, "rent")[0]
        assert rent.status == "paid"
        assert rent.channel == "wechat"

    def test_disallowed_transition(self, svc, world):
        order = svc.create_order(_order_input(world))
        with pytest.raises(OrderInvalidStatusError):
            svc.transition_order(order.id, "SHIPPED")

    def test_same_status_rejected(self, svc, world):
        order = svc.create_order(_order_input(world))
        with pytest.raises(OrderInvalidStatusError):
            svc.transition_order(order.id, "NEW", force=True)

    def test_unknown_status(self, svc, world):
        order = svc.create_order(_order_input(world))
        with pytest.raises(ValidationError):
            svc.transition_order(order.id, "LOST")

    def test_missing_order(self, svc):
        with pytest.raises(OrderNotFoundError):
            svc.transition_order(999, "PAID")

    def test_force_bypasses_table(self, svc, world):
        order = svc.create_order(_order_input(world))
        order = svc.transition_order(order.id, "SHIPPED", force=True, operator=1)
        assert order.status == "SHIPPED"

    def test_terminal_never_moves(self, svc, world):
        order = svc.create_order(_order_input(world))
        svc.transition_order(order.id, "CANCELED")
        with pytest.raises(OrderInvalidStatusError):
            svc.transition_order(order.id, "PAID", force=True)

    def test_every_transition_audited(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        order = _to_returning(svc, order.id, clock)
        assert [h["status"] for h in order.status_history] == [
            "NEW", "PAID", "TO_SHIP", "SHIPPED", "IN_RENT", "RETURNING",
        ]
        assert all(h["changed_at"] for h in order.status_history)


class TestShipment:

    def test_malformed_shipping_date(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        svc.transition_order(order.id, "PAID")
        with pytest.raises(ValidationError) as exc:
            svc.transition_order(order.id, "SHIPPED", {
                "device_sn": "SN-001", "shipping_date": "not-a-date",
            })
        assert exc.value.details["field"] == "shipping_date"
        assert svc.get_order(order.id).status == "TO_SHIP"
        assert store.find("devices") == []

    def test_billing_starts_next_midnight(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        order = _ship(svc, order.id, clock, shipping_no="SF123")
        assert order.shipping_no == "SF123"
        assert order.shipping_date == "2025-10-24T15:30:00+08:00"
        assert order.actual_start_date == "2025-10-25T00:00:00+08:00"

    def test_auto_provisions_device(self, svc, world, clock, store):
        order = svc.create_order(_order_input(world))
        order = _ship(svc, order.id, clock, device_sn="SN-NEW")
        device = store.find_one("devices", {"sn": "SN-NEW"})
        assert device["status"] == "in_transit"
        assert device["current_order_id"] == order.id
        assert device["merchant_sku_id"] == world["sku"]["id"]
        assert order.device_id == device["id"]

    def test_binds_existing_device(self, svc, world, clock, store):
        device = CatalogService(store).create_device(world["sku"]["id"], "SN-001")
        order = svc.create_order(_order_input(world))
        order = _ship(svc, order.id, clock, device_sn="SN-001")
        assert order.device_id == device["id"]
        assert store.find_by_id("devices", device["id"])["status"] == "in_transit"

    def test_device_of_other_sku(self, svc, world, clock, store):
        catalog = CatalogService(store)
        other = catalog.create_sku(world["merchant"]["id"], "其他相机", "5", "500")
        catalog.create_device(other["id"], "SN-OTHER")
        order = svc.create_order(_order_input(world))
        with pytest.raises(ValidationError) as exc:
            _ship(svc, order.id, clock, device_sn="SN-OTHER")
        assert exc.value.code == ErrorCode.DEVICE_UNAVAILABLE
        assert svc.get_order(order.id).status == "TO_SHIP"

    def test_device_not_shippable(self, svc, world, clock, store):
        CatalogService(store).create_device(world["sku"]["id"], "SN-BUSY", status="in_rent")
        order = svc.create_order(_order_input(world))
        with pytest.raises(InvalidStateError) as exc:
            _ship(svc, order.id, clock, device_sn="SN-BUSY")
        assert exc.value.code == ErrorCode.DEVICE_UNAVAILABLE

    def test_in_rent_updates_device(self, svc, world, clock, store):
        order = svc.create_order(_order_input(world))
        _ship(svc, order.id, clock, device_sn="SN-001")
        svc.transition_order(order.id, "IN_RENT")
        assert store.find_one("devices", {"sn": "SN-001"})["status"] == "in_rent"


class TestReturnAndCompletion:

    def test_malformed_return_confirm_time(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        order = _to_returning(svc, order.id, clock)
        with pytest.raises(ValidationError) as exc:
            svc.transition_order(order.id, "RETURNED", {"return_confirm_time": "2025-13-45"})
        assert exc.value.details["field"] == "return_confirm_time"
        assert svc.get_order(order.id).status == "RETURNING"

    def test_overdue_example(self, svc, world, clock, store):
        """实际起租 T，租期 7 天，T+9 天归还 -> 逾期 2 天。"""
        order = svc.create_order(_order_input(world))
        order = _to_returning(svc, order.id, clock)
        start = datetime.fromisoformat(order.actual_start_date)
        order = svc.transition_order(order.id, "RETURNED", {
            "return_confirm_time": (start + timedelta(days=9)).isoformat(),
        })
        assert order.is_overdue is True
        assert order.overdue_days == 2
        assert order.overdue_amount == Decimal("20.00")
        assert order.order_total_amount == Decimal("95.00")

        overdue = PaymentLedger(store).list_for_order(order.id, "overdue")
        assert len(overdue) == 1
        assert overdue[0].amount == Decimal("20.00")
        assert overdue[0].status == "pending"

    def test_partial_day_rounds_up(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        order = _to_returning(svc, order.id, clock)
        start = datetime.fromisoformat(order.actual_start_date)
        order = svc.transition_order(order.id, "RETURNED", {
            "return_confirm_time": (start + timedelta(days=7, hours=1)).isoformat(),
        })
        assert order.overdue_days == 1

    def test_on_time_return_clears_overdue(self, svc, world, clock, store):
        order = svc.create_order(_order_input(world))
        order = _to_returning(svc, order.id, clock)
        clock.now = datetime.fromisoformat(order.actual_start_date) + timedelta(days=6)
        order = svc.transition_order(order.id, "RETURNED")
        assert order.is_overdue is False
        assert order.overdue_days == 0
        assert order.overdue_amount == Decimal("0.00")
        assert order.order_total_amount == Decimal("75.00")
        assert order.return_confirm_time == clock.now.isoformat(timespec="seconds")

    def test_return_releases_device(self, svc, world, clock, store):
        order = svc.create_order(_order_input(world))
        _to_returning(svc, order.id, clock, device_sn="SN-001")
        svc.transition_order(order.id, "RETURNED")
        device = store.find_one("devices", {"sn": "SN-001"})
        assert device["status"] == "in_stock"
        assert device["current_order_id"] is None
        assert device["rental_count"] == 1

    def test_completion_blocked_until_overdue_paid(self, svc, world, clock, store):
        order = svc.create_order(_order_input(world))
        order = _to_returning(svc, order.id, clock)
        start = datetime.fromisoformat(order.actual_start_date)
        svc.transition_order(order.id, "RETURNED", {
            "return_confirm_time": (start + timedelta(days=9)).isoformat(),
        })

        with pytest.raises(OverdueUnpaidError) as exc:
            svc.transition_order(order.id, "COMPLETED")
        assert exc.value.details["remaining"] == "20.00"
        assert "20.00" in exc.value.message
        assert _used_credit(store, world) == Decimal("1000.00")

        payments = PaymentLedger(store)
        overdue = payments.list_for_order(order.id, "overdue")[0]
        payments.mark_paid(overdue.id, "wechat")

        order = svc.transition_order(order.id, "COMPLETED", operator=3)
        assert order.status == "COMPLETED"
        assert _used_credit(store, world) == Decimal("0.00")

    def test_forced_completion_still_gated(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        order = _to_returning(svc, order.id, clock)
        start = datetime.fromisoformat(order.actual_start_date)
        svc.transition_order(order.id, "RETURNED", {
            "return_confirm_time": (start + timedelta(days=9)).isoformat(),
        })
        with pytest.raises(OverdueUnpaidError):
            svc.transition_order(order.id, "COMPLETED", force=True)

    def test_completion_without_overdue_releases_credit(self, svc, world, clock, store):
        order = svc.create_order(_order_input(world))
        _to_returning(svc, order.id, clock)
        svc.transition_order(order.id, "RETURNED")
        svc.transition_order(order.id, "COMPLETED")
        credit = store.find_by_id("credits", world["credit"].id)
        assert credit["used_credit"] == Decimal("0.00")
        assert credit["available_credit"] == Decimal("5000.00")


class TestCancel:

    def test_cancel_new_releases_credit(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        order = svc.transition_order(order.id, "CANCELED", {"notes": "不想租了"}, operator=4)
        assert order.status == "CANCELED"
        assert order.status_history[-1]["notes"] == "不想租了"
        assert _used_credit(store, world) == Decimal("0.00")
        rent = PaymentLedger(store).list_for_order(order.id, "rent")[0]
        assert rent.status == "failed"
        assert PaymentLedger(store).list_for_order(order.id, "rent_canceled") == []

    def test_cancel_after_payment_refunds(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        svc.transition_order(order.id, "PAID")
        svc.transition_order(order.id, "CANCELED")
        refunds = PaymentLedger(store).list_for_order(order.id, "rent_canceled")
        assert len(refunds) == 1
        assert refunds[0].amount == Decimal("-75.00")

    def test_cancel_not_allowed_after_shipment(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        _ship(svc, order.id, clock)
        with pytest.raises(OrderInvalidStatusError):
            svc.transition_order(order.id, "CANCELED")

    def test_release_only_own_hold(self, svc, world, store):
        first = svc.create_order(_order_input(world))
        svc.create_order(_order_input(world))
        assert _used_credit(store, world) == Decimal("2000.00")
        svc.transition_order(first.id, "CANCELED")
        assert _used_credit(store, world) == Decimal("1000.00")

    def test_second_release_is_harmless(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        svc.transition_order(order.id, "CANCELED")
        CreditLedger(store).release_credit(
            order.customer_id, order.merchant_id, order.credit_hold_amount
        )
        assert _used_credit(store, world) == Decimal("0.00")


# ── 改址 ──────────────────────────────────────────────────


class TestChangeAddress:

    def test_new_order_replaces_snapshot(self, svc, world):
        order = svc.create_order(_order_input(world))
        order = svc.change_order_address(order.id, dict(GUANGZHOU), operator=5)
        assert order.shipping_fee_snapshot == Decimal("10.00")
        assert order.shipping_fee_adjustment == Decimal("0.00")
        assert order.order_total_amount == Decimal("80.00")
        assert order.address_change_count == 1
        assert order.shipping_address["region_code"] == "440106"
        entry = order.address_change_history[0]
        assert entry["old_address"]["district"] == "南山区"
        assert entry["new_address"]["district"] == "天河区"
        assert entry["fee_delta"] == "5.00"
        assert entry["operator"] == 5

    def test_new_order_reprices_pending_rent(self, svc, world, store):
        """待支付订单改址后，原待支付租金作废并按新运费重开，不产生补差记录。"""
        order = svc.create_order(_order_input(world))
        svc.change_order_address(order.id, dict(GUANGZHOU))
        ledger = PaymentLedger(store)
        rent = ledger.list_for_order(order.id, "rent")
        assert [(p.status, p.amount) for p in rent] == [
            ("failed", Decimal("75.00")),
            ("pending", Decimal("80.00")),
        ]
        assert rent[1].amount_detail["shipping"] == "10.00"
        assert ledger.list_for_order(order.id, "addr_up") == []

        svc.transition_order(order.id, "PAID")
        assert ledger.sum_paid(order.id, "rent") == Decimal("80.00")

    def test_paid_order_records_adjustment(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        svc.transition_order(order.id, "PAID")
        order = svc.change_order_address(order.id, dict(GUANGZHOU))
        assert order.shipping_fee_snapshot == Decimal("5.00")
        assert order.shipping_fee_adjustment == Decimal("5.00")
        assert order.order_total_amount == Decimal("80.00")

        up = PaymentLedger(store).list_for_order(order.id, "addr_up")
        assert len(up) == 1
        assert up[0].amount == Decimal("5.00")

    def test_adjustment_can_go_negative(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        svc.transition_order(order.id, "PAID")
        svc.change_order_address(order.id, dict(GUANGZHOU))
        order = svc.change_order_address(order.id, dict(SHENZHEN))
        assert order.shipping_fee_snapshot == Decimal("5.00")
        assert order.shipping_fee_adjustment == Decimal("0.00")
        down = PaymentLedger(store).list_for_order(order.id, "addr_down")
        assert down[0].amount == Decimal("-5.00")

    def test_no_payment_when_fee_unchanged(self, svc, world, store):
        order = svc.create_order(_order_input(world))
        svc.transition_order(order.id, "PAID")
        moved = dict(SHENZHEN, district="福田区")
        svc.change_order_address(order.id, moved)
        assert PaymentLedger(store).list_for_order(order.id, "addr_up") == []
        assert PaymentLedger(store).list_for_order(order.id, "addr_down") == []

    def test_limit_reached(self, svc, world):
        order = svc.create_order(_order_input(world))
        for _ in range(MAX_ADDRESS_CHANGES):
            svc.change_order_address(order.id, dict(GUANGZHOU))
        with pytest.raises(AddressChangeLimitError):
            svc.change_order_address(order.id, dict(SHENZHEN))

    def test_limit_checked_regardless_of_status(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        for _ in range(MAX_ADDRESS_CHANGES):
            svc.change_order_address(order.id, dict(GUANGZHOU))
        _ship(svc, order.id, clock)
        with pytest.raises(AddressChangeLimitError):
            svc.change_order_address(order.id, dict(SHENZHEN))

    def test_not_editable_after_shipment(self, svc, world, clock):
        order = svc.create_order(_order_input(world))
        _ship(svc, order.id, clock)
        with pytest.raises(AddressNotEditableError):
            svc.change_order_address(order.id, dict(GUANGZHOU))

    def test_blacklisted_new_address(self, svc, world):
        order = svc.create_order(_order_input(world))
        with pytest.raises(RegionBlacklistedError):
            svc.change_order_address(order.id, dict(URUMQI))
        assert svc.get_order(order.id).address_change_count == 0

    def test_invalid_new_address(self, svc, world):
        order = svc.create_order(_order_input(world))
        with pytest.raises(ValidationError):
            svc.change_order_address(order.id, {"contact_name": "张三"})

    def test_unknown_region_new_address(self, svc, world):
        order = svc.create_order(_order_input(world))
        address = dict(
            GUANGZHOU, province="火星省", city="奥林匹斯市", district="某区",
        )
        with pytest.raises(ValidationError) as exc:
            svc.change_order_address(order.id, address)
        assert exc.value.details["field"] == "region_code"
        order = svc.get_order(order.id)
        assert order.address_change_count == 0
        assert order.shipping_address["region_code"] == "440305"


class TestQueries:

    def test_get_order(self, svc, world):
        created = svc.create_order(_order_input(world))
        assert svc.get_order(created.id).order_no == created.order_no

    def test_get_missing_order(self, svc):
        with pytest.raises(OrderNotFoundError):
            svc.get_order(999)

    def test_list_orders_filter(self, svc, world):
        first = svc.create_order(_order_input(world))
        second = svc.create_order(_order_input(world))
        svc.transition_order(first.id, "CANCELED")
        assert [o.id for o in svc.list_orders()] == [second.id, first.id]
        assert [o.id for o in svc.list_orders({"status": "NEW"})] == [second.id]
