"""
运费计算与运费模板管理。

calculate_shipping_fee 严格按优先级判定：
1. 黑名单：任一黑名单地区编码前缀命中收货地址编码 -> 不发货，运费 0
2. 地区规则：所有命中的规则中取裁剪后前缀最长的一条（区县 > 市 > 省）
3. 默认运费
地址缺少 region_code 时黑名单和地区规则都无法命中，只能走默认运费；
调用方须在计算前补全 region_code，黑名单保护才会生效。
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from rentcore.errors import ErrorCode, NotFoundError, ValidationError
from rentcore.models.schemas import FeeResult, ShippingTemplate
from rentcore.services.region_codes import trim_region_code
from rentcore.store import RecordStore, parse_money, to_money

logger = logging.getLogger(__name__)

DEFAULT_BLACKLIST_REASON = "该地区不发货"

TEMPLATE_STATUSES = ("active", "inactive", "archived")

# 这些字段变化才算实质性修改，需要递增版本号
_PRICING_FIELDS = ("default_fee", "region_rules", "blacklist_regions")


def _get(obj: Any, key: str, default=None):
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _matches_region(region_code_path: str, region_code: Optional[str]) -> bool:
    if not region_code:
        return False
    prefix = trim_region_code(region_code_path)
    return bool(prefix) and region_code.startswith(prefix)


def calculate_shipping_fee(template: Any, address: Any) -> FeeResult:
    """
    计算运费。

    Args:
        template: 运费模板（ShippingTemplate 或 dict），含 default_fee、region_rules、blacklist_regions。
        address: 收货地址（dict 或对象），使用其中的 region_code。

    Returns:
        FeeResult，matched_rule 记录命中的规则，便于排查。
    """
    region_code = _get(address, "region_code")

    # 1. 黑名单（优先级最高，命中即返回）
    for region in _get(template, "blacklist_regions") or []:
        if _matches_region(_get(region, "region_code_path", ""), region_code):
            return FeeResult(
                fee=Decimal("0.00"),
                is_blacklisted=True,
                blacklist_reason=_get(region, "reason") or DEFAULT_BLACKLIST_REASON,
                matched_rule=f"黑名单: {_get(region, 'region_name') or _get(region, 'region_code_path')}",
            )

    # 2. 地区规则：最长前缀优先
    best = None
    best_len = -1
    for rule in _get(template, "region_rules") or []:
        path = _get(rule, "region_code_path", "")
        if not _matches_region(path, region_code):
            continue
        prefix_len = len(trim_region_code(path))
        if prefix_len > best_len:
            best, best_len = rule, prefix_len

    if best is not None:
        return FeeResult(
            fee=to_money(_get(best, "fee")),
            matched_rule=f"地区规则: {_get(best, 'region_name') or ''} ({_get(best, 'region_code_path')})",
        )

    # 3. 默认运费
    return FeeResult(fee=to_money(_get(template, "default_fee")), matched_rule="默认运费")


def _normalize_rules(rules: Optional[list], with_fee: bool) -> list[dict]:
    normalized = []
    for index, rule in enumerate(rules or []):
        path = str(_get(rule, "region_code_path", "") or "").strip()
        if not path.isdigit():
            raise ValidationError(
                f"第 {index + 1} 条规则的地区编码无效: {path!r}",
                field="region_code_path",
            )
        item = {
            "region_code_path": path,
            "region_name": _get(rule, "region_name") or "",
        }
        if with_fee:
            fee = parse_money(_get(rule, "fee"), "fee")
            if fee < 0:
                raise ValidationError("运费不能为负数", field="fee")
            item["fee"] = fee
        else:
            item["reason"] = _get(rule, "reason")
        normalized.append(item)
    return normalized


class ShippingTemplateService:
    """运费模板管理：创建、修改（版本递增）、默认模板唯一、查找可用模板。"""

    def __init__(self, store: RecordStore):
        self.store = store

    def _clear_other_defaults(self, merchant_id: int, keep_id: int) -> None:
        for other in self.store.find(
            "shipping_templates", {"merchant_id": merchant_id, "is_default": True}
        ):
            if other["id"] != keep_id:
                self.store.update("shipping_templates", other["id"], {"is_default": False})

    def create_template(
        self,
        merchant_id: int,
        name: str,
        default_fee,
        region_rules: Optional[list] = None,
        blacklist_regions: Optional[list] = None,
        is_default: bool = False,
        status: str = "active",
        notes: Optional[str] = None,
    ) -> ShippingTemplate:
        if status not in TEMPLATE_STATUSES:
            raise ValidationError(f"运费模板状态无效: {status}", field="status")
        fee = parse_money(default_fee, "default_fee")
        if fee < 0:
            raise ValidationError("默认运费不能为负数", field="default_fee")

        with self.store.transaction():
            record = self.store.create("shipping_templates", {
                "merchant_id": merchant_id,
                "name": name,
                "version": 1,
                "default_fee": fee,
                "region_rules": _normalize_rules(region_rules, with_fee=True),
                "blacklist_regions": _normalize_rules(blacklist_regions, with_fee=False),
                "status": status,
                "is_default": is_default,
                "notes": notes,
            })
            if is_default:
                self._clear_other_defaults(merchant_id, record["id"])
        logger.info("创建运费模板: id=%s, merchant_id=%s", record["id"], merchant_id)
        return ShippingTemplate.from_record(record)

    def update_template(self, template_id: int, changes: dict) -> ShippingTemplate:
        """修改模板；运费相关字段有变化时 version + 1。"""
        original = self.store.find_by_id("shipping_templates", template_id)
        if not original:
            raise NotFoundError(
                "运费模板不存在",
                code=ErrorCode.SHIPPING_TEMPLATE_NOT_FOUND,
                details={"template_id": template_id},
            )

        data = {}
        if "name" in changes:
            data["name"] = changes["name"]
        if "notes" in changes:
            data["notes"] = changes["notes"]
        if "status" in changes:
            if changes["status"] not in TEMPLATE_STATUSES:
                raise ValidationError(f"运费模板状态无效: {changes['status']}", field="status")
            data["status"] = changes["status"]
        if "is_default" in changes:
            data["is_default"] = bool(changes["is_default"])
        if "default_fee" in changes:
            data["default_fee"] = parse_money(changes["default_fee"], "default_fee")
        if "region_rules" in changes:
            data["region_rules"] = _normalize_rules(changes["region_rules"], with_fee=True)
        if "blacklist_regions" in changes:
            data["blacklist_regions"] = _normalize_rules(changes["blacklist_regions"], with_fee=False)

        # 与 JSON 往返后的形态比较
        compare = self.store.round_trip("shipping_templates", data)
        if any(
            key in compare and compare[key] != original[key]
            for key in _PRICING_FIELDS
        ):
            data["version"] = (original.get("version") or 1) + 1

        with self.store.transaction():
            record = self.store.update("shipping_templates", template_id, data)
            if record["is_default"]:
                self._clear_other_defaults(record["merchant_id"], record["id"])
        return ShippingTemplate.from_record(record)

    def get_template(self, template_id: int) -> Optional[ShippingTemplate]:
        record = self.store.find_by_id("shipping_templates", template_id)
        return ShippingTemplate.from_record(record) if record else None

    def find_usable_template(self, sku: dict) -> ShippingTemplate:
        """SKU 自带模板优先，否则使用商户的默认启用模板。"""
        template_id = sku.get("shipping_template_id")
        if template_id:
            record = self.store.find_by_id("shipping_templates", template_id)
            if record and record["status"] == "active":
                return ShippingTemplate.from_record(record)

        record = self.store.find_one("shipping_templates", {
            "merchant_id": sku["merchant_id"],
            "is_default": True,
            "status": "active",
        })
        if not record:
            raise NotFoundError(
                "无法找到可用的运费模板，请联系商户",
                code=ErrorCode.SHIPPING_TEMPLATE_NOT_FOUND,
                details={"merchant_sku_id": sku.get("id"), "merchant_id": sku["merchant_id"]},
            )
        return ShippingTemplate.from_record(record)
