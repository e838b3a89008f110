"""商户目录服务：商户、用户、SKU、归还地址、设备。"""

import logging
from typing import Optional

from rentcore.errors import ErrorCode, NotFoundError, ValidationError
from rentcore.services.identity import ROLES
from rentcore.store import RecordStore, parse_money

logger = logging.getLogger(__name__)

SKU_STATUSES = ("active", "inactive")
DEVICE_STATUSES = ("in_stock", "in_transit", "in_rent", "maintenance", "retired")


class CatalogService:
    """商户目录：创建商户、用户、SKU、归还地址（每商户一个默认）、设备。"""

    def __init__(self, store: RecordStore):
        self.store = store

    def _require_merchant(self, merchant_id: int) -> dict:
        merchant = self.store.find_by_id("merchants", merchant_id)
        if not merchant:
            raise NotFoundError("商户不存在", code=ErrorCode.MERCHANT_NOT_FOUND,
                                details={"merchant_id": merchant_id})
        return merchant

    def create_merchant(self, name: str, status: str = "approved") -> dict:
        if not name or not name.strip():
            raise ValidationError("商户名称不能为空", field="name")
        merchant = self.store.create("merchants", {"name": name.strip(), "status": status})
        logger.info("创建商户: id=%s, name=%s", merchant["id"], merchant["name"])
        return merchant

    def create_user(self, name: str, role: str = "customer", merchant_id: Optional[int] = None) -> dict:
        """
        创建用户。

        Raises:
            ValidationError: 角色无效，或商户角色未指定所属商户。
        """
        if role not in ROLES:
            raise ValidationError(f"用户角色无效: {role}", field="role",
                                  code=ErrorCode.INVALID_USER_ROLE)
        if role.startswith("merchant_"):
            if merchant_id is None:
                raise ValidationError("商户角色必须指定所属商户", field="merchant_id")
            self._require_merchant(merchant_id)
        return self.store.create("users", {
            "name": name,
            "role": role,
            "merchant_id": merchant_id,
        })

    def create_sku(
        self,
        merchant_id: int,
        name: str,
        daily_fee,
        device_value,
        shipping_template_id: Optional[int] = None,
        status: str = "active",
    ) -> dict:
        self._require_merchant(merchant_id)
        if status not in SKU_STATUSES:
            raise ValidationError(f"SKU状态无效: {status}", field="status")
        daily_fee = parse_money(daily_fee, "daily_fee")
        device_value = parse_money(device_value, "device_value")
        if daily_fee < 0 or device_value < 0:
            raise ValidationError("租金和设备价值不能为负数", field="daily_fee")
        sku = self.store.create("merchant_skus", {
            "merchant_id": merchant_id,
            "name": name,
            "daily_fee": daily_fee,
            "device_value": device_value,
            "shipping_template_id": shipping_template_id,
            "status": status,
        })
        logger.info("创建SKU: id=%s, merchant_id=%s", sku["id"], merchant_id)
        return sku

    def create_return_info(
        self,
        merchant_id: int,
        contact_name: str,
        contact_phone: str,
        province: str,
        city: str,
        address: str,
        district: Optional[str] = None,
        is_default: bool = False,
        status: str = "active",
    ) -> dict:
        """创建归还地址；设为默认时取消该商户其他记录的默认标记。"""
        self._require_merchant(merchant_id)
        with self.store.transaction():
            if is_default:
                self.store.update_where(
                    "return_info",
                    {"merchant_id": merchant_id, "is_default": True},
                    {"is_default": False},
                )
            return self.store.create("return_info", {
                "merchant_id": merchant_id,
                "contact_name": contact_name,
                "contact_phone": contact_phone,
                "province": province,
                "city": city,
                "district": district,
                "address": address,
                "status": status,
                "is_default": is_default,
            })

    def create_device(self, merchant_sku_id: int, sn: str, status: str = "in_stock") -> dict:
        if not self.store.find_by_id("merchant_skus", merchant_sku_id):
            raise NotFoundError("SKU不存在", code=ErrorCode.SKU_NOT_FOUND,
                                details={"merchant_sku_id": merchant_sku_id})
        if status not in DEVICE_STATUSES:
            raise ValidationError(f"设备状态无效: {status}", field="status")
        if self.store.find_one("devices", {"sn": sn}):
            raise ValidationError(f"设备序列号 '{sn}' 已存在", field="sn")
        return self.store.create("devices", {
            "merchant_sku_id": merchant_sku_id,
            "sn": sn,
            "status": status,
            "rental_count": 0,
        })
