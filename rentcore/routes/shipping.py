"""
运费路由：运费试算、运费模板创建与修改。
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rentcore.errors import ErrorCode, NotFoundError, ValidationError
from rentcore.models.schemas import Principal
from rentcore.routes.deps import credited_merchant_ids, get_store, require, to_json
from rentcore.services import policy
from rentcore.services.identity import get_current_principal
from rentcore.services.region_codes import lookup_region_code
from rentcore.services.shipping import ShippingTemplateService, calculate_shipping_fee
from rentcore.store import RecordStore

router = APIRouter(prefix="/v1/shipping")


class CalculateRequest(BaseModel):
    template_id: Optional[int] = None
    merchant_sku_id: Optional[int] = None
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    region_code: Optional[str] = None


class CreateTemplateRequest(BaseModel):
    name: str
    default_fee: str
    region_rules: list[dict] = []
    blacklist_regions: list[dict] = []
    is_default: bool = False
    status: str = "active"
    notes: Optional[str] = None


class UpdateTemplateRequest(BaseModel):
    name: Optional[str] = None
    default_fee: Optional[str] = None
    region_rules: Optional[list[dict]] = None
    blacklist_regions: Optional[list[dict]] = None
    is_default: Optional[bool] = None
    status: Optional[str] = None
    notes: Optional[str] = None


@router.post("/calculate")
async def calculate(
    body: CalculateRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """
    运费试算。指定 template_id，或指定 merchant_sku_id 由系统选择可用模板。
    未传 region_code 时按省市区名称查地区编码。
    """
    service = ShippingTemplateService(store)
    if body.template_id:
        template = service.get_template(body.template_id)
        if not template:
            raise NotFoundError("运费模板不存在", code=ErrorCode.SHIPPING_TEMPLATE_NOT_FOUND,
                                details={"template_id": body.template_id})
    elif body.merchant_sku_id:
        sku = store.find_by_id("merchant_skus", body.merchant_sku_id)
        if not sku:
            raise NotFoundError("SKU不存在", code=ErrorCode.SKU_NOT_FOUND,
                                details={"merchant_sku_id": body.merchant_sku_id})
        template = service.find_usable_template(sku)
    else:
        raise ValidationError("需要指定 template_id 或 merchant_sku_id", field="template_id")

    require(policy.can_read(
        principal, "shipping_templates", template.to_dict(),
        credited_merchant_ids=credited_merchant_ids(store, principal.user_id),
    ), "无权使用该运费模板")

    region_code = body.region_code or lookup_region_code(body.province, body.city, body.district)
    result = calculate_shipping_fee(template, {"region_code": region_code})
    return {
        "code": 1,
        "region_code": region_code,
        "template_id": template.id,
        "template_version": template.version,
        "data": to_json(result),
    }


@router.post("/templates")
async def create_template(
    body: CreateTemplateRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    require(policy.can_create(principal, "shipping_templates"), "只有商户可以创建运费模板")
    template = ShippingTemplateService(store).create_template(
        principal.merchant_id,
        body.name,
        body.default_fee,
        region_rules=body.region_rules,
        blacklist_regions=body.blacklist_regions,
        is_default=body.is_default,
        status=body.status,
        notes=body.notes,
    )
    return {"code": 1, "data": to_json(template)}


@router.patch("/templates/{template_id}")
async def update_template(
    template_id: int,
    body: UpdateTemplateRequest,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    service = ShippingTemplateService(store)
    template = service.get_template(template_id)
    if not template:
        raise NotFoundError("运费模板不存在", code=ErrorCode.SHIPPING_TEMPLATE_NOT_FOUND,
                            details={"template_id": template_id})
    require(policy.can_write(principal, "shipping_templates", template.to_dict()), "无权修改该运费模板")
    template = service.update_template(template_id, body.model_dump(exclude_none=True))
    return {"code": 1, "data": to_json(template)}
