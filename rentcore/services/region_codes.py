"""
行政区划代码表：省/市/区县名称与 6 位地区编码互查。

与 address_parser 的启发式解析不同，这里是权威代码表，下单时用于
在调用方只提供名称或只提供编码时补全另一侧。数据文件 data/regions.json
收录全部省级行政区及主要城市的区县。
"""

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Optional

from rentcore.models.schemas import RegionNames

DATA_FILE = Path(__file__).resolve().parent.parent / "data" / "regions.json"

DIRECT_MUNICIPALITY_CODES = ("110000", "120000", "310000", "500000")

_PROVINCE_SUFFIX_RE = re.compile(r"(壮族|维吾尔|回族)?(省|自治区|特别行政区|市)$")
_CITY_SUFFIX_RE = re.compile(r"(市|盟|州|地区)$")
_DISTRICT_SUFFIX_RE = re.compile(r"(区|县|旗|市)$")


@lru_cache(maxsize=1)
def _load() -> list[dict]:
    with open(DATA_FILE, encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def _code_index() -> dict[str, str]:
    """编码 -> 名称。"""
    index = {}
    for province in _load():
        index[province["code"]] = province["name"]
        for city in province["cities"]:
            index.setdefault(city["code"], city["name"])
            for district in city["districts"]:
                index[district["code"]] = district["name"]
    return index


def trim_region_code(code: str) -> str:
    """
    去掉编码末尾成对的 0，得到用于前缀匹配的层级前缀。

    440000 -> 44，440300 -> 4403，440305 -> 440305。按两位一级裁剪，
    避免 440310 被裁成 44031 后误匹配 440311。
    """
    trimmed = (code or "").strip()
    while len(trimmed) >= 2 and trimmed.endswith("00"):
        trimmed = trimmed[:-2]
    return trimmed


def _same_name(candidate: str, name: str, suffix_re: re.Pattern) -> bool:
    if candidate == name:
        return True
    return suffix_re.sub("", candidate) == suffix_re.sub("", name)


@lru_cache(maxsize=1)
def province_short_names() -> tuple[tuple[str, str], ...]:
    """(简称, 全称) 列表，简称长的在前。"""
    pairs = []
    for province in _load():
        full = province["name"]
        short = _PROVINCE_SUFFIX_RE.sub("", full)
        if short and short != full:
            pairs.append((short, full))
    pairs.sort(key=lambda p: len(p[0]), reverse=True)
    return tuple(pairs)


def _find_province(name: str) -> Optional[dict]:
    for province in _load():
        if _same_name(name, province["name"], _PROVINCE_SUFFIX_RE):
            return province
    return None


def is_direct_municipality(province: Optional[str]) -> bool:
    if not province:
        return False
    found = _find_province(province)
    return bool(found) and found["code"] in DIRECT_MUNICIPALITY_CODES


def lookup_region_code(
    province: Optional[str],
    city: Optional[str] = None,
    district: Optional[str] = None,
) -> Optional[str]:
    """按名称查地区编码，返回能确定的最细一级（区县 > 市 > 省）；省份未知返回 None。"""
    if not province:
        return None
    prov = _find_province(province.strip())
    if not prov:
        return None

    city_rec = None
    if prov["code"] in DIRECT_MUNICIPALITY_CODES:
        # 直辖市只有一个市级节点，city 可缺省或与省同名
        city_rec = prov["cities"][0] if prov["cities"] else None
    elif city:
        for c in prov["cities"]:
            if _same_name(city.strip(), c["name"], _CITY_SUFFIX_RE):
                city_rec = c
                break

    if district:
        scope = [city_rec] if city_rec else prov["cities"]
        for c in scope:
            for d in c["districts"]:
                if _same_name(district.strip(), d["name"], _DISTRICT_SUFFIX_RE):
                    return d["code"]

    if city_rec:
        return city_rec["code"]
    return prov["code"]


def resolve_region_names(code: Optional[str]) -> RegionNames:
    """按地区编码反查省/市/区县名称；直辖市的市级名称即直辖市名称。未知编码返回全 None。"""
    code = (code or "").strip()
    if not code.isdigit() or len(code) > 6:
        return RegionNames()
    code = code.ljust(6, "0")
    index = _code_index()

    province = index.get(code[:2] + "0000")
    if not province:
        return RegionNames()

    city_code = code[:4] + "00"
    city = index.get(city_code) if city_code != code[:2] + "0000" else None
    if city is None and code[:2] + "0000" in DIRECT_MUNICIPALITY_CODES:
        city = province

    district = index.get(code) if code[4:] != "00" else None
    return RegionNames(province=province, city=city, district=district)
