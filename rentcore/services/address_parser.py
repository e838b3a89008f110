"""
地址解析工具：将中国地址字符串解析为结构化的省、市、区县、街道。

按后缀贪婪匹配的启发式解析，不是行政区划库查询：
1. 省级：四个直辖市前缀，或 省/自治区/特别行政区 后缀；都不命中时尝试省份简称
2. 市级：市/盟/州 后缀；省级已匹配直辖市时跳过
3. 区县级：区/县/旗 后缀；已匹配到市级时也接受 市（县级市）
4. 剩余部分作为街道
任一级未命中则该级为 None，从不抛出异常。口语化或简写的市、区县
可能解析失败，需要下单流程用地区编码表补全。
"""

import re

from rentcore.models.schemas import ParsedAddress
from rentcore.services.region_codes import province_short_names

DIRECT_MUNICIPALITIES = ("北京市", "上海市", "天津市", "重庆市")

# 港澳不在行政区划代码表的区县层级内，单独处理
SPECIAL_REGIONS = ("香港特别行政区", "澳门特别行政区")
HONG_KONG_AREAS = ("香港岛", "九龙", "新界")

_PROVINCE_RE = re.compile(r"^(.{1,10}?(?:省|自治区|特别行政区))")
# “广州市”中的“州”后面紧跟“市”，不能提前截断
_CITY_RE = re.compile(r"^(.{1,12}?(?:市|盟|州(?!市)))")
_DISTRICT_RE = re.compile(r"^(.{1,12}?(?:区|县|旗))")
_DISTRICT_OR_CITY_RE = re.compile(r"^(.{1,12}?(?:区|县|旗|市))")
_SPECIAL_DISTRICT_RE = re.compile(r"^(.{1,12}?(?:堂区|区))")

# 简称后面若紧跟这些字，说明简称其实是更长地名的一部分
_SUFFIX_CHARS = "省市区县州盟旗"


def _match_province(text: str) -> tuple[str, int] | None:
    """返回 (省级全称, 消耗长度)。"""
    for name in SPECIAL_REGIONS + DIRECT_MUNICIPALITIES:
        if text.startswith(name):
            return name, len(name)

    m = _PROVINCE_RE.match(text)
    if m:
        return m.group(1), len(m.group(1))

    # 简称（最长优先），如“安徽”“内蒙古”“北京”
    for short, full in province_short_names():
        if text.startswith(short):
            rest = text[len(short):]
            if rest and rest[0] in _SUFFIX_CHARS:
                continue
            return full, len(short)
    return None


def _match_city(text: str, province: str | None) -> str | None:
    if province in SPECIAL_REGIONS:
        for area in HONG_KONG_AREAS:
            if text.startswith(area):
                return area
        return None
    m = _CITY_RE.match(text)
    return m.group(1) if m else None


def _match_district(text: str, province: str | None, has_city: bool) -> str | None:
    if province in SPECIAL_REGIONS:
        pattern = _SPECIAL_DISTRICT_RE
    elif has_city:
        pattern = _DISTRICT_OR_CITY_RE
    else:
        pattern = _DISTRICT_RE
    m = pattern.match(text)
    return m.group(1) if m else None


def parse_address(raw: str) -> ParsedAddress:
    """
    解析中国地址。

    >>> parse_address("广东省深圳市南山区科技园南路")
    ParsedAddress(province='广东省', city='深圳市', district='南山区', street='科技园南路')
    """
    clean = (raw or "").strip()
    if not clean:
        return ParsedAddress(province=None, city=None, district=None, street="")

    remaining = clean
    province = city = district = None

    matched = _match_province(remaining)
    if matched:
        province, consumed = matched
        remaining = remaining[consumed:]

    if remaining and province not in DIRECT_MUNICIPALITIES:
        city = _match_city(remaining, province)
        if city:
            remaining = remaining[len(city):]

    if remaining:
        district = _match_district(remaining, province, city is not None)
        if district:
            remaining = remaining[len(district):]

    return ParsedAddress(
        province=province,
        city=city,
        district=district,
        street=remaining,
    )
