"""地址解析单元测试。"""

import pytest

from rentcore.models.schemas import ParsedAddress
from rentcore.services.address_parser import parse_address


class TestParseAddress:
    """省 / 市 / 区县 / 街道拆分。"""

    def test_standard_address(self):
        assert parse_address("广东省深圳市南山区科技园南路") == ParsedAddress(
            province="广东省", city="深圳市", district="南山区", street="科技园南路",
        )

    def test_empty_string(self):
        result = parse_address("")
        assert result.province is None
        assert result.city is None
        assert result.district is None
        assert result.street == ""

    def test_whitespace_only(self):
        result = parse_address("   ")
        assert result == ParsedAddress(province=None, city=None, district=None, street="")

    def test_none_input(self):
        assert parse_address(None).street == ""

    def test_direct_municipality_skips_city(self):
        """直辖市不再匹配市级。"""
        result = parse_address("北京市朝阳区建国路88号")
        assert result.province == "北京市"
        assert result.city is None
        assert result.district == "朝阳区"
        assert result.street == "建国路88号"

    def test_city_name_containing_zhou(self):
        """“广州市”不能在“州”处截断。"""
        result = parse_address("广东省广州市天河区体育西路")
        assert result.city == "广州市"
        assert result.district == "天河区"

    def test_autonomous_region_league_and_county_city(self):
        result = parse_address("内蒙古自治区锡林郭勒盟锡林浩特市宝力根路")
        assert result.province == "内蒙古自治区"
        assert result.city == "锡林郭勒盟"
        assert result.district == "锡林浩特市"
        assert result.street == "宝力根路"

    def test_banner_district(self):
        result = parse_address("内蒙古自治区呼和浩特市土默特左旗察素齐镇")
        assert result.district == "土默特左旗"
        assert result.street == "察素齐镇"

    def test_province_short_name(self):
        """省份简称回退到全称。"""
        result = parse_address("新疆乌鲁木齐市天山区解放北路")
        assert result.province == "新疆维吾尔自治区"
        assert result.city == "乌鲁木齐市"
        assert result.district == "天山区"

    def test_province_short_name_not_prefix_of_city(self):
        """简称后紧跟后缀字时不当作省份简称。"""
        result = parse_address("吉林市船营区")
        assert result.province != "吉林省"

    def test_no_match_leaves_levels_empty(self):
        result = parse_address("科技园南路1号")
        assert result.province is None
        assert result.city is None
        assert result.district is None
        assert result.street == "科技园南路1号"

    def test_hong_kong(self):
        result = parse_address("香港特别行政区九龙油尖旺区弥敦道")
        assert result.province == "香港特别行政区"
        assert result.city == "九龙"
        assert result.district == "油尖旺区"

    @pytest.mark.parametrize("raw", ["广东", "省", "区", "市"])
    def test_never_raises(self, raw):
        assert isinstance(parse_address(raw), ParsedAddress)
