"""
通用记录存储：按集合名对 SQLite 表做查询、创建、更新、删除。

- JSON 列（地址、历史记录、运费规则等）读写时自动编解码
- 金额列以两位小数字符串存储，读出时转为 Decimal
- transaction() 支持嵌套，内层加入外层事务；异常时整体回滚
- compare_and_update() 用单条 UPDATE 实现比较并交换，供授信计数器避免丢失更新
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Optional

from rentcore import database
from rentcore.errors import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# 集合 -> (JSON 列, 金额列)
_COLLECTIONS: dict[str, tuple[frozenset, frozenset]] = {
    "merchants": (frozenset(), frozenset()),
    "users": (frozenset(), frozenset()),
    "merchant_skus": (frozenset(), frozenset({"daily_fee", "device_value"})),
    "shipping_templates": (
        frozenset({"region_rules", "blacklist_regions"}),
        frozenset({"default_fee"}),
    ),
    "credits": (
        frozenset({"credit_history"}),
        frozenset({"credit_limit", "used_credit", "available_credit"}),
    ),
    "credit_invitations": (frozenset(), frozenset({"credit_limit"})),
    "credit_invitation_usages": (frozenset(), frozenset({"credit_amount"})),
    "return_info": (frozenset(), frozenset()),
    "devices": (frozenset(), frozenset()),
    "orders": (
        frozenset({
            "shipping_address", "return_address",
            "address_change_history", "status_history",
        }),
        frozenset({
            "daily_fee_snapshot", "device_value_snapshot",
            "shipping_fee_snapshot", "shipping_fee_adjustment",
            "credit_hold_amount", "overdue_amount", "order_total_amount",
        }),
    ),
    "payments": (frozenset({"amount_detail"}), frozenset({"amount"})),
}

# 布尔列：SQLite 以 0/1 存储
_BOOL_FIELDS = frozenset({"is_default", "is_overdue"})


def to_money(value: Any) -> Decimal:
    """任意数值转两位小数 Decimal。"""
    if value is None or value == "":
        return Decimal("0.00")
    if isinstance(value, Decimal):
        return value.quantize(CENT)
    return Decimal(str(value)).quantize(CENT)


def parse_money(value: Any, field: str) -> Decimal:
    """外部输入的金额；无法解析时抛 ValidationError。"""
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"金额格式错误: {value!r}", field=field) from None
    if not amount.is_finite():
        raise ValidationError(f"金额格式错误: {value!r}", field=field)
    return amount


def _json_default(value: Any):
    if isinstance(value, Decimal):
        return str(value.quantize(CENT))
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"无法序列化类型: {type(value).__name__}")


def now_str() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class RecordStore:
    """基于 sqlite3 连接的集合存储。"""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._tx_depth = 0

    @classmethod
    def open(cls) -> "RecordStore":
        """按当前 DB_PATH 打开一个新连接。"""
        return cls(database.get_db())

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "RecordStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── 编解码 ────────────────────────────────────────────

    @staticmethod
    def _column_kinds(collection: str) -> tuple[frozenset, frozenset]:
        try:
            return _COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"未知集合: {collection}") from None

    def _encode(self, collection: str, data: dict) -> dict:
        json_fields, money_fields = self._column_kinds(collection)
        encoded = {}
        for key, value in data.items():
            if key in json_fields and value is not None:
                value = json.dumps(value, ensure_ascii=False, default=_json_default)
            elif key in money_fields and value is not None:
                value = str(to_money(value))
            elif key in _BOOL_FIELDS and value is not None:
                value = 1 if value else 0
            elif isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            encoded[key] = value
        return encoded

    def _decode(self, collection: str, row: Optional[sqlite3.Row]) -> Optional[dict]:
        if row is None:
            return None
        json_fields, money_fields = self._column_kinds(collection)
        record = dict(row)
        for key, value in record.items():
            if value is None:
                continue
            if key in json_fields:
                record[key] = json.loads(value)
            elif key in money_fields:
                record[key] = to_money(value)
            elif key in _BOOL_FIELDS:
                record[key] = bool(value)
        return record

    def round_trip(self, collection: str, data: dict) -> dict:
        """返回 data 经存储编解码后的形态，用于与已存记录比较。"""
        encoded = self._encode(collection, data)
        json_fields, money_fields = self._column_kinds(collection)
        decoded = {}
        for key, value in encoded.items():
            if value is not None and key in json_fields:
                value = json.loads(value)
            elif value is not None and key in money_fields:
                value = to_money(value)
            elif value is not None and key in _BOOL_FIELDS:
                value = bool(value)
            decoded[key] = value
        return decoded

    @staticmethod
    def _where_clause(where: Optional[dict]) -> tuple[str, list]:
        """where 字典：值为 list/tuple 时生成 IN，为 None 时生成 IS NULL。"""
        if not where:
            return "", []
        parts = []
        params: list = []
        for key, value in where.items():
            if value is None:
                parts.append(f"{key} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    parts.append("0")
                    continue
                parts.append(f"{key} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                if isinstance(value, bool):
                    value = 1 if value else 0
                elif isinstance(value, Decimal):
                    value = str(value)
                parts.append(f"{key} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(parts), params

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    # ── 事务 ──────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator["RecordStore"]:
        """事务上下文；嵌套调用加入最外层事务。"""
        if self._tx_depth == 0 and not self.conn.in_transaction:
            self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.rollback()
                logger.debug("事务已回滚")
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.commit()

    # ── 查询 ──────────────────────────────────────────────

    def find(
        self,
        collection: str,
        where: Optional[dict] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        self._column_kinds(collection)
        clause, params = self._where_clause(where)
        sql = f"SELECT * FROM {collection}{clause}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._decode(collection, row) for row in rows]

    def find_one(
        self,
        collection: str,
        where: Optional[dict] = None,
        order_by: Optional[str] = None,
    ) -> Optional[dict]:
        records = self.find(collection, where, order_by=order_by or "id ASC", limit=1)
        return records[0] if records else None

    def find_by_id(self, collection: str, record_id: int) -> Optional[dict]:
        self._column_kinds(collection)
        row = self.conn.execute(
            f"SELECT * FROM {collection} WHERE id = ?", (record_id,)
        ).fetchone()
        return self._decode(collection, row)

    # ── 写入 ──────────────────────────────────────────────

    def create(self, collection: str, data: dict) -> dict:
        now = now_str()
        payload = {"created_at": now, "updated_at": now}
        payload.update(self._encode(collection, data))
        columns = ", ".join(payload)
        marks = ", ".join("?" for _ in payload)
        cursor = self.conn.execute(
            f"INSERT INTO {collection} ({columns}) VALUES ({marks})",
            list(payload.values()),
        )
        self._commit()
        return self.find_by_id(collection, cursor.lastrowid)

    def update(self, collection: str, record_id: int, changes: dict) -> Optional[dict]:
        if changes:
            payload = self._encode(collection, changes)
            payload["updated_at"] = now_str()
            assignments = ", ".join(f"{key} = ?" for key in payload)
            self.conn.execute(
                f"UPDATE {collection} SET {assignments} WHERE id = ?",
                [*payload.values(), record_id],
            )
            self._commit()
        return self.find_by_id(collection, record_id)

    def update_where(self, collection: str, where: dict, changes: dict) -> int:
        """批量更新，返回受影响行数。"""
        payload = self._encode(collection, changes)
        payload["updated_at"] = now_str()
        assignments = ", ".join(f"{key} = ?" for key in payload)
        clause, params = self._where_clause(where)
        cursor = self.conn.execute(
            f"UPDATE {collection} SET {assignments}{clause}",
            [*payload.values(), *params],
        )
        self._commit()
        return cursor.rowcount

    def compare_and_update(
        self,
        collection: str,
        record_id: int,
        expected: dict,
        changes: dict,
    ) -> bool:
        """仅当 expected 中各列仍为原值时更新，返回是否成功。"""
        payload = self._encode(collection, changes)
        payload["updated_at"] = now_str()
        assignments = ", ".join(f"{key} = ?" for key in payload)
        guard, params = self._where_clause(
            {**self._encode(collection, expected), "id": record_id}
        )
        cursor = self.conn.execute(
            f"UPDATE {collection} SET {assignments}{guard}",
            [*payload.values(), *params],
        )
        self._commit()
        return cursor.rowcount == 1

    def delete(self, collection: str, record_id: int) -> bool:
        self._column_kinds(collection)
        cursor = self.conn.execute(
            f"DELETE FROM {collection} WHERE id = ?", (record_id,)
        )
        self._commit()
        return cursor.rowcount > 0
