"""
收货地址校验与补全。

名称（省/市/区县）与 region_code 互为补充：缺哪一侧就用地区编码表补哪一侧；
两侧都缺失时再用 full_address 的启发式解析结果兜底。补全后仍缺少的层级
逐字段报错，而不是笼统的“地址无效”。两侧都提供但不一致时只记录告警，
运费按 region_code 计算。
"""

import logging
from typing import Optional

from rentcore.errors import ErrorCode, ValidationError
from rentcore.services.address_parser import parse_address
from rentcore.services.region_codes import (
    is_direct_municipality,
    lookup_region_code,
    resolve_region_names,
)

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = (
    "contact_name", "contact_phone", "province", "city",
    "district", "address", "region_code",
)

_REQUIRED_CONTACT = (
    ("contact_name", "缺少收货人(contact_name)"),
    ("contact_phone", "缺少联系电话(contact_phone)"),
)

_REQUIRED_REGION = (
    ("province", "缺少省份(province)"),
    ("city", "缺少城市(city)"),
    ("district", "缺少区县(district)"),
)


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def resolve_shipping_address(raw: Optional[dict]) -> dict:
    """
    校验并补全收货地址。

    Args:
        raw: 含 contact_name, contact_phone, province, city, district, address,
             region_code，可选 full_address（完整地址字符串）。

    Returns:
        规范化后的地址字典（ADDRESS_FIELDS 各键）。

    Raises:
        ValidationError: details["field"] 指明缺失字段。
    """
    if not raw:
        raise ValidationError(
            "缺少收货地址", field="shipping_address", code=ErrorCode.ADDRESS_INVALID
        )

    addr = {key: _clean(raw.get(key)) for key in ADDRESS_FIELDS}

    for key, message in _REQUIRED_CONTACT:
        if not addr[key]:
            raise ValidationError(message, field=key, code=ErrorCode.ADDRESS_INVALID)

    # 完整地址字符串兜底：只填补缺失的层级
    full_address = _clean(raw.get("full_address"))
    if full_address:
        parsed = parse_address(full_address)
        for key in ("province", "city", "district"):
            if not addr[key] and getattr(parsed, key):
                addr[key] = getattr(parsed, key)
        if not addr["address"] and parsed.street:
            addr["address"] = parsed.street

    # region_code -> 名称
    if addr["region_code"]:
        names = resolve_region_names(addr["region_code"])
        for key in ("province", "city", "district"):
            known = getattr(names, key)
            if not addr[key] and known:
                addr[key] = known
            elif addr[key] and known and addr[key] != known:
                logger.warning(
                    "地址名称与地区编码不一致: %s=%s, region_code=%s -> %s",
                    key, addr[key], addr["region_code"], known,
                )

    # 直辖市的市级与省级同名
    if not addr["city"] and is_direct_municipality(addr["province"]):
        addr["city"] = addr["province"]

    # 名称 -> region_code，再用查到的编码补全缺失层级
    if not addr["region_code"]:
        addr["region_code"] = lookup_region_code(
            addr["province"], addr["city"], addr["district"]
        )
        if addr["region_code"]:
            names = resolve_region_names(addr["region_code"])
            for key in ("city", "district"):
                if not addr[key] and getattr(names, key):
                    addr[key] = getattr(names, key)

    for key, message in _REQUIRED_REGION:
        if not addr[key]:
            raise ValidationError(message, field=key, code=ErrorCode.ADDRESS_INVALID)

    if not addr["address"]:
        raise ValidationError(
            "缺少详细地址(address)", field="address", code=ErrorCode.ADDRESS_INVALID
        )

    # 没有地区编码就无法做黑名单判定
    if not addr["region_code"]:
        raise ValidationError(
            "无法识别收货地区(region_code)", field="region_code", code=ErrorCode.ADDRESS_INVALID
        )

    return addr
