"""
路由公共依赖：每个请求一个存储连接、权限断言、响应序列化。
"""

from dataclasses import asdict, is_dataclass
from decimal import Decimal
from typing import Any, Iterator

from rentcore.errors import PermissionDeniedError
from rentcore.store import RecordStore


def get_store() -> Iterator[RecordStore]:
    """FastAPI 依赖项：打开连接，请求结束后关闭。"""
    store = RecordStore.open()
    try:
        yield store
    finally:
        store.close()


def require(allowed: bool, message: str = "无权执行该操作") -> None:
    if not allowed:
        raise PermissionDeniedError(message)


def credited_merchant_ids(store: RecordStore, user_id: int) -> list[int]:
    """用户持有有效授信的商户。"""
    return [
        credit["merchant_id"]
        for credit in store.find("credits", {"user_id": user_id, "status": "active"})
    ]


def to_json(value: Any) -> Any:
    """dataclass / Decimal 转为 JSON 友好结构；金额保留两位小数字符串。"""
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, dict):
        return {key: to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    return value
