"""
调用方身份：JWT 令牌生成/验证、FastAPI 依赖项。

令牌载荷携带 user_id、role、merchant_id，解码后得到 Principal，
用于授权判断和在状态历史中记录操作人。
"""

import os
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from rentcore.models.schemas import Principal

load_dotenv()

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))

ROLES = (
    "platform_admin",
    "platform_operator",
    "merchant_admin",
    "merchant_member",
    "customer",
)


def create_token(principal: Principal) -> str:
    """生成 JWT 令牌，有效期 JWT_EXPIRE_HOURS 小时。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {
        "sub": str(principal.user_id),
        "role": principal.role,
        "merchant_id": principal.merchant_id,
        "exp": expire,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Principal:
    """
    解码并验证 JWT 令牌。

    Raises:
        ValueError: 令牌无效、已过期或角色未知。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")
    if "sub" not in payload:
        raise ValueError("令牌缺少用户信息")
    if payload.get("role") not in ROLES:
        raise ValueError(f"令牌角色无效: {payload.get('role')}")
    return Principal(
        user_id=int(payload["sub"]),
        role=payload["role"],
        merchant_id=payload.get("merchant_id"),
    )


def get_current_principal(request: Request) -> Principal:
    """
    FastAPI 依赖项：从 Authorization header (Bearer) 或 cookie 中提取并验证 JWT。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    token = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]

    if not token:
        token = request.cookies.get("token")

    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")

    try:
        return verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")
