"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/rentcore.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────
# 金额列使用 TEXT 存储两位小数字符串，保证 Decimal 往返精确（授信 CAS 依赖精确比较）。

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS merchants (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(128) NOT NULL,
    status          VARCHAR(16)  DEFAULT 'approved',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(64)  NOT NULL,
    role            VARCHAR(32)  NOT NULL DEFAULT 'customer',
    merchant_id     INTEGER      REFERENCES merchants(id),
    status          VARCHAR(16)  DEFAULT 'active',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS shipping_templates (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    name            VARCHAR(128) NOT NULL,
    version         INTEGER      NOT NULL DEFAULT 1,
    default_fee     TEXT         NOT NULL DEFAULT '0.00',
    region_rules    TEXT         NOT NULL DEFAULT '[]',
    blacklist_regions TEXT       NOT NULL DEFAULT '[]',
    status          VARCHAR(16)  DEFAULT 'active',
    is_default      INTEGER      DEFAULT 0,
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS merchant_skus (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    name            VARCHAR(256) NOT NULL,
    daily_fee       TEXT         NOT NULL,
    device_value    TEXT         NOT NULL,
    shipping_template_id INTEGER REFERENCES shipping_templates(id),
    status          VARCHAR(16)  DEFAULT 'active',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS credits (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL REFERENCES users(id),
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    credit_limit    TEXT         NOT NULL DEFAULT '0.00',
    used_credit     TEXT         NOT NULL DEFAULT '0.00',
    available_credit TEXT        NOT NULL DEFAULT '0.00',
    status          VARCHAR(16)  DEFAULT 'active',
    source          VARCHAR(16)  DEFAULT 'manual',
    granted_at      DATETIME,
    granted_by      INTEGER,
    revoked_at      DATETIME,
    revoked_by      INTEGER,
    invitation_usage_id INTEGER,
    notes           TEXT,
    credit_history  TEXT         NOT NULL DEFAULT '[]',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS credit_invitations (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    invitation_code VARCHAR(32)  NOT NULL UNIQUE,
    credit_limit    TEXT         NOT NULL,
    validity_days   INTEGER      NOT NULL DEFAULT 30,
    max_uses        INTEGER,
    used_count      INTEGER      NOT NULL DEFAULT 0,
    status          VARCHAR(16)  DEFAULT 'active',
    expires_at      DATETIME     NOT NULL,
    created_by      INTEGER,
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS credit_invitation_usages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    invitation_id   INTEGER      NOT NULL REFERENCES credit_invitations(id),
    invitation_code VARCHAR(32)  NOT NULL,
    user_id         INTEGER      NOT NULL REFERENCES users(id),
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    credit_id       INTEGER      REFERENCES credits(id),
    credit_amount   TEXT         NOT NULL,
    used_at         DATETIME     NOT NULL,
    ip_address      VARCHAR(64),
    user_agent      TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS return_info (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    contact_name    VARCHAR(64)  NOT NULL,
    contact_phone   VARCHAR(32)  NOT NULL,
    province        VARCHAR(32)  NOT NULL,
    city            VARCHAR(32)  NOT NULL,
    district        VARCHAR(32),
    address         TEXT         NOT NULL,
    status          VARCHAR(16)  DEFAULT 'active',
    is_default      INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_no        VARCHAR(32)  NOT NULL UNIQUE,
    customer_id     INTEGER      NOT NULL REFERENCES users(id),
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    merchant_sku_id INTEGER      NOT NULL REFERENCES merchant_skus(id),
    device_id       INTEGER      REFERENCES devices(id),
    status          VARCHAR(16)  NOT NULL DEFAULT 'NEW',
    rent_start_date VARCHAR(32)  NOT NULL,
    rent_end_date   VARCHAR(32)  NOT NULL,
    rent_days       INTEGER      NOT NULL,
    actual_start_date DATETIME,
    timezone        VARCHAR(64)  DEFAULT 'Asia/Shanghai',
    daily_fee_snapshot TEXT      NOT NULL,
    device_value_snapshot TEXT   NOT NULL,
    shipping_fee_snapshot TEXT   NOT NULL,
    shipping_fee_adjustment TEXT NOT NULL DEFAULT '0.00',
    shipping_template_id INTEGER REFERENCES shipping_templates(id),
    shipping_template_version INTEGER,
    credit_hold_amount TEXT      NOT NULL,
    shipping_address TEXT        NOT NULL,
    return_address  TEXT,
    address_change_count INTEGER NOT NULL DEFAULT 0,
    address_change_history TEXT  NOT NULL DEFAULT '[]',
    shipping_date   DATETIME,
    shipping_no     VARCHAR(64),
    return_no       VARCHAR(64),
    return_confirm_time DATETIME,
    is_overdue      INTEGER      NOT NULL DEFAULT 0,
    overdue_days    INTEGER      NOT NULL DEFAULT 0,
    overdue_amount  TEXT         NOT NULL DEFAULT '0.00',
    order_total_amount TEXT      NOT NULL,
    notes           TEXT,
    status_history  TEXT         NOT NULL DEFAULT '[]',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS devices (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_sku_id INTEGER      NOT NULL REFERENCES merchant_skus(id),
    sn              VARCHAR(64)  NOT NULL UNIQUE,
    status          VARCHAR(16)  DEFAULT 'in_stock',
    current_order_id INTEGER,
    rental_count    INTEGER      DEFAULT 0,
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS payments (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    transaction_no  VARCHAR(64)  NOT NULL UNIQUE,
    type            VARCHAR(16)  NOT NULL,
    amount          TEXT         NOT NULL,
    amount_detail   TEXT,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    channel         VARCHAR(16),
    notes           TEXT,
    paid_at         DATETIME,
    refunded_at     DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_credits_user_merchant
    ON credits(user_id, merchant_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_invitations_code
    ON credit_invitations(invitation_code);
CREATE INDEX IF NOT EXISTS idx_credit_invitations_merchant
    ON credit_invitations(merchant_id, status);
CREATE INDEX IF NOT EXISTS idx_credit_invitation_usages_invitation
    ON credit_invitation_usages(invitation_id);
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_merchant_status
    ON orders(merchant_id, status);
CREATE INDEX IF NOT EXISTS idx_orders_customer
    ON orders(customer_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_order_no
    ON orders(order_no);
CREATE INDEX IF NOT EXISTS idx_shipping_templates_merchant
    ON shipping_templates(merchant_id, is_default, status);
CREATE INDEX IF NOT EXISTS idx_return_info_merchant
    ON return_info(merchant_id, is_default, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_devices_sn
    ON devices(sn);
CREATE INDEX IF NOT EXISTS idx_payments_order_type_status
    ON payments(order_id, type, status);
"""

# 测试重建数据库时按依赖逆序删除
TABLES = (
    "payments",
    "orders",
    "devices",
    "return_info",
    "credit_invitation_usages",
    "credits",
    "credit_invitations",
    "merchant_skus",
    "shipping_templates",
    "users",
    "merchants",
)


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表和索引。"""
    # 确保 data/ 目录存在
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        # 迁移：为已有数据库添加新列
        _migrate_schema(conn)

        conn.commit()
    finally:
        conn.close()


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    # credits 表添加 invitation_usage_id 列
    try:
        conn.execute("SELECT invitation_usage_id FROM credits LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE credits ADD COLUMN invitation_usage_id INTEGER")


def drop_all(conn: sqlite3.Connection) -> None:
    """删除全部业务表（仅用于测试重建）。"""
    conn.executescript(
        "".join(f"DROP TABLE IF EXISTS {name};\n" for name in TABLES)
    )
