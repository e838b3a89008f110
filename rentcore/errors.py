"""
业务异常定义：订单、授信、运费、地址等核心流程抛出的领域错误。

所有业务异常继承 BusinessError，携带错误码、面向用户的消息、
可选的结构化详情（如所需/可用金额）以及对应的 HTTP 状态码。
核心流程只负责抛出，不做自动重试。
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """业务错误码。"""

    # 通用
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"

    # 用户 / 商户
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_USER_ROLE = "INVALID_USER_ROLE"
    MERCHANT_NOT_FOUND = "MERCHANT_NOT_FOUND"

    # 授信
    CREDIT_NOT_FOUND = "CREDIT_NOT_FOUND"
    CREDIT_INVALID_STATE = "CREDIT_INVALID_STATE"
    CREDIT_INSUFFICIENT = "CREDIT_INSUFFICIENT"
    CREDIT_CONFLICT = "CREDIT_CONFLICT"
    CREDIT_ALREADY_EXISTS = "CREDIT_ALREADY_EXISTS"

    # 授信邀请码
    INVITATION_NOT_FOUND = "INVITATION_NOT_FOUND"
    INVITATION_UNAVAILABLE = "INVITATION_UNAVAILABLE"

    # 订单
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_INVALID_STATUS = "ORDER_INVALID_STATUS"
    OVERDUE_UNPAID = "OVERDUE_UNPAID"

    # SKU / 设备
    SKU_NOT_FOUND = "SKU_NOT_FOUND"
    SKU_UNAVAILABLE = "SKU_UNAVAILABLE"
    DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"

    # 运费 / 归还
    SHIPPING_TEMPLATE_NOT_FOUND = "SHIPPING_TEMPLATE_NOT_FOUND"
    REGION_BLACKLISTED = "REGION_BLACKLISTED"
    RETURN_INFO_NOT_FOUND = "RETURN_INFO_NOT_FOUND"

    # 地址
    ADDRESS_INVALID = "ADDRESS_INVALID"
    ADDRESS_NOT_EDITABLE = "ADDRESS_NOT_EDITABLE"
    ADDRESS_CHANGE_LIMIT = "ADDRESS_CHANGE_LIMIT"

    # 支付
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    PAYMENT_INVALID_STATUS = "PAYMENT_INVALID_STATUS"


class BusinessError(Exception):
    """业务错误基类。"""

    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict:
        return {
            "code": -1,
            "error": self.code.value,
            "msg": self.message,
            "details": self.details,
        }


# ── 错误类别 ──────────────────────────────────────────────

class NotFoundError(BusinessError):
    """记录不存在（SKU、授信、运费模板、归还信息、订单等）。"""
    status_code = 404
    default_code = ErrorCode.NOT_FOUND


class InvalidStateError(BusinessError):
    """记录状态不允许当前操作。"""
    status_code = 409
    default_code = ErrorCode.ORDER_INVALID_STATUS


class InsufficientFundsError(BusinessError):
    """额度不足。"""
    default_code = ErrorCode.CREDIT_INSUFFICIENT


class ValidationError(BusinessError):
    """输入不完整或格式错误，details["field"] 指明字段。"""
    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if field:
            self.details.setdefault("field", field)
        self.field = field


class PolicyViolationError(BusinessError):
    """违反业务规则：黑名单地区、改址次数上限、逾期未结清等。"""


class PermissionDeniedError(BusinessError):
    """调用方无权执行该操作。"""
    status_code = 403
    default_code = ErrorCode.FORBIDDEN


# ── 具体错误 ──────────────────────────────────────────────

class CreditNotFoundError(NotFoundError):
    default_code = ErrorCode.CREDIT_NOT_FOUND


class CreditInvalidStateError(InvalidStateError):
    default_code = ErrorCode.CREDIT_INVALID_STATE


class CreditInsufficientError(InsufficientFundsError):
    default_code = ErrorCode.CREDIT_INSUFFICIENT


class CreditConflictError(InvalidStateError):
    """授信记录并发更新冲突，重试次数用尽。"""
    default_code = ErrorCode.CREDIT_CONFLICT


class CreditAlreadyExistsError(InvalidStateError):
    """用户在该商户已有授信，邀请码不能重复授信。"""
    default_code = ErrorCode.CREDIT_ALREADY_EXISTS


class InvitationNotFoundError(NotFoundError):
    default_code = ErrorCode.INVITATION_NOT_FOUND


class InvitationUnavailableError(InvalidStateError):
    """邀请码已暂停、过期或达到使用上限。"""
    default_code = ErrorCode.INVITATION_UNAVAILABLE


class OrderNotFoundError(NotFoundError):
    default_code = ErrorCode.ORDER_NOT_FOUND


class OrderInvalidStatusError(InvalidStateError):
    default_code = ErrorCode.ORDER_INVALID_STATUS


class AddressNotEditableError(InvalidStateError):
    default_code = ErrorCode.ADDRESS_NOT_EDITABLE


class AddressChangeLimitError(PolicyViolationError):
    default_code = ErrorCode.ADDRESS_CHANGE_LIMIT


class RegionBlacklistedError(PolicyViolationError):
    default_code = ErrorCode.REGION_BLACKLISTED


class OverdueUnpaidError(PolicyViolationError):
    default_code = ErrorCode.OVERDUE_UNPAID
