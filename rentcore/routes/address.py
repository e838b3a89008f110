"""地址解析路由。"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rentcore.models.schemas import Principal
from rentcore.services.address_parser import parse_address
from rentcore.services.identity import get_current_principal
from rentcore.services.region_codes import lookup_region_code

router = APIRouter(prefix="/v1/address")


class ParseRequest(BaseModel):
    address: str


@router.post("/parse")
async def parse(body: ParseRequest, principal: Principal = Depends(get_current_principal)):
    """启发式拆分省市区，并尝试查出地区编码（查不到时为 null）。"""
    parsed = parse_address(body.address)
    region_code = lookup_region_code(parsed.province, parsed.city, parsed.district)
    return {"code": 1, "data": {**parsed.to_dict(), "region_code": region_code}}
