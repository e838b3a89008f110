"""
授权策略：基于 Principal 的纯函数，不访问存储。

- 平台角色（platform_admin / platform_operator）可见全部记录
- 商户角色只能访问本商户的记录
- 普通用户只能访问自己的订单与授信，以及已授信商户的运费模板
"""

from typing import Iterable, Optional

from rentcore.models.schemas import Principal

PLATFORM_ROLES = ("platform_admin", "platform_operator")
MERCHANT_ROLES = ("merchant_admin", "merchant_member")

# 商户 / 用户在订单上可主动发起的流转
MERCHANT_TRANSITIONS = (
    "TO_SHIP", "SHIPPED", "IN_RENT", "RETURNING", "RETURNED", "COMPLETED", "CANCELED",
)
CUSTOMER_TRANSITIONS = ("PAID", "IN_RENT", "RETURNING", "CANCELED")

# 只能通过父订单访问的集合
_ORDER_SCOPED = ("payments",)

# 记录中归属用户的字段
_OWNER_FIELDS = {
    "orders": "customer_id",
    "credits": "user_id",
}

# 没有权限时的查询条件：IN () 恒为假
_DENY_ALL = {"id": []}


def _own_merchant(principal: Principal, record: Optional[dict]) -> bool:
    return (
        principal.merchant_id is not None
        and record is not None
        and record.get("merchant_id") == principal.merchant_id
    )


def _own_record(principal: Principal, collection: str, record: Optional[dict]) -> bool:
    owner_field = _OWNER_FIELDS.get(collection)
    return (
        owner_field is not None
        and record is not None
        and record.get(owner_field) == principal.user_id
    )


def can_read(
    principal: Principal,
    collection: str,
    record: Optional[dict] = None,
    credited_merchant_ids: Iterable[int] = (),
) -> bool:
    """
    读权限。payments 传入其所属订单作为 record。
    普通用户读取运费模板需要传入已授信商户列表。
    """
    if principal.is_platform:
        return True
    if collection in _ORDER_SCOPED:
        collection = "orders"
    if principal.is_merchant:
        return _own_merchant(principal, record)
    if principal.role == "customer":
        if collection == "shipping_templates":
            return record is not None and record.get("merchant_id") in set(credited_merchant_ids)
        return _own_record(principal, collection, record)
    return False


def can_create(principal: Principal, collection: str) -> bool:
    if collection == "orders":
        return principal.role == "customer"
    if collection in ("credits", "credit_invitations"):
        return principal.role == "merchant_admin"
    if collection == "credit_invitation_usages":
        return principal.role == "customer"
    if collection == "shipping_templates":
        return principal.is_merchant
    if collection == "payments":
        return principal.is_platform or principal.is_merchant
    return principal.is_platform


def can_write(principal: Principal, collection: str, record: Optional[dict] = None) -> bool:
    if collection == "orders":
        if principal.is_platform:
            return True
        if principal.is_merchant:
            return _own_merchant(principal, record)
        return principal.role == "customer" and _own_record(principal, collection, record)
    if collection in ("credits", "credit_invitations"):
        if principal.role == "platform_admin":
            return True
        return principal.role == "merchant_admin" and _own_merchant(principal, record)
    if collection == "shipping_templates":
        if principal.role == "platform_admin":
            return True
        return principal.is_merchant and _own_merchant(principal, record)
    if collection == "payments":
        return principal.is_platform
    return principal.role == "platform_admin"


def can_delete(principal: Principal, collection: str, record: Optional[dict] = None) -> bool:
    if principal.role == "platform_admin":
        return True
    if collection == "credit_invitations":
        return principal.role == "merchant_admin" and _own_merchant(principal, record)
    return False


def can_transition(
    principal: Principal,
    order: dict,
    new_status: str,
    force: bool = False,
) -> bool:
    """订单状态流转权限；强制流转仅限平台角色。"""
    if principal.is_platform:
        return True
    if force:
        return False
    if principal.is_merchant:
        return _own_merchant(principal, order) and new_status in MERCHANT_TRANSITIONS
    if principal.role == "customer":
        return _own_record(principal, "orders", order) and new_status in CUSTOMER_TRANSITIONS
    return False


def read_filter(
    principal: Principal,
    collection: str,
    credited_merchant_ids: Iterable[int] = (),
) -> Optional[dict]:
    """
    列表查询的 where 条件。

    Returns:
        None 表示不加限制；无权限时返回恒为假的条件。
    """
    if principal.is_platform:
        return None
    if principal.is_merchant:
        if principal.merchant_id is None:
            return dict(_DENY_ALL)
        return {"merchant_id": principal.merchant_id}
    if principal.role == "customer":
        if collection == "shipping_templates":
            return {"merchant_id": list(credited_merchant_ids)}
        owner_field = _OWNER_FIELDS.get(collection)
        if owner_field:
            return {owner_field: principal.user_id}
    return dict(_DENY_ALL)
