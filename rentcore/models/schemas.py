"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from typing import Optional


class _Record:
    """从存储记录构造 dataclass，忽略多余列。"""

    @classmethod
    def from_record(cls, record: dict):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in names})

    def to_dict(self) -> dict:
        return asdict(self)


# ── 地址 / 地区 ───────────────────────────────────────────

@dataclass
class ParsedAddress(_Record):
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    street: Optional[str] = ""


@dataclass
class RegionNames(_Record):
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None


# ── 运费 ──────────────────────────────────────────────────

@dataclass
class RegionRule(_Record):
    region_code_path: str
    fee: Decimal
    region_name: str = ""


@dataclass
class BlacklistRegion(_Record):
    region_code_path: str
    region_name: str = ""
    reason: Optional[str] = None


@dataclass
class ShippingTemplate(_Record):
    id: Optional[int] = None
    merchant_id: Optional[int] = None
    name: str = ""
    version: int = 1
    default_fee: Decimal = Decimal("0.00")
    region_rules: list = field(default_factory=list)
    blacklist_regions: list = field(default_factory=list)
    status: str = "active"
    is_default: bool = False
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class FeeResult:
    fee: Decimal
    is_blacklisted: bool = False
    blacklist_reason: Optional[str] = None
    matched_rule: Optional[str] = None


# ── 调用方身份 ────────────────────────────────────────────

@dataclass
class Principal(_Record):
    user_id: int
    role: str
    merchant_id: Optional[int] = None

    @property
    def is_platform(self) -> bool:
        return self.role in ("platform_admin", "platform_operator")

    @property
    def is_merchant(self) -> bool:
        return self.role in ("merchant_admin", "merchant_member")


# ── 授信 ──────────────────────────────────────────────────

@dataclass
class Credit(_Record):
    id: int
    user_id: int
    merchant_id: int
    credit_limit: Decimal = Decimal("0.00")
    used_credit: Decimal = Decimal("0.00")
    available_credit: Decimal = Decimal("0.00")
    status: str = "active"
    source: str = "manual"
    granted_at: Optional[datetime] = None
    granted_by: Optional[int] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None
    invitation_usage_id: Optional[int] = None
    notes: Optional[str] = None
    credit_history: list = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CreditInvitation(_Record):
    """商户发放的授信邀请码；max_uses 为 None 表示不限次数。"""
    id: int
    merchant_id: int
    invitation_code: str
    credit_limit: Decimal
    expires_at: str
    validity_days: int = 30
    max_uses: Optional[int] = None
    used_count: int = 0
    status: str = "active"
    created_by: Optional[int] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class InvitationUsage(_Record):
    id: int
    invitation_id: int
    invitation_code: str
    user_id: int
    merchant_id: int
    credit_amount: Decimal
    used_at: str
    credit_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── 订单 ──────────────────────────────────────────────────

@dataclass
class Order(_Record):
    id: int
    order_no: str
    customer_id: int
    merchant_id: int
    merchant_sku_id: int
    status: str
    rent_start_date: str
    rent_end_date: str
    rent_days: int
    daily_fee_snapshot: Decimal
    device_value_snapshot: Decimal
    shipping_fee_snapshot: Decimal
    credit_hold_amount: Decimal
    order_total_amount: Decimal
    shipping_address: dict = field(default_factory=dict)
    return_address: Optional[dict] = None
    device_id: Optional[int] = None
    actual_start_date: Optional[str] = None
    timezone: str = "Asia/Shanghai"
    shipping_fee_adjustment: Decimal = Decimal("0.00")
    shipping_template_id: Optional[int] = None
    shipping_template_version: Optional[int] = None
    address_change_count: int = 0
    address_change_history: list = field(default_factory=list)
    shipping_date: Optional[str] = None
    shipping_no: Optional[str] = None
    return_no: Optional[str] = None
    return_confirm_time: Optional[str] = None
    is_overdue: bool = False
    overdue_days: int = 0
    overdue_amount: Decimal = Decimal("0.00")
    notes: Optional[str] = None
    status_history: list = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── 支付 / 附加费用 ───────────────────────────────────────

@dataclass
class Payment(_Record):
    id: int
    order_id: int
    transaction_no: str
    type: str
    amount: Decimal
    status: str = "pending"
    amount_detail: Optional[dict] = None
    channel: Optional[str] = None
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
