"""时间工具：业务时区下的当前时间与计费起点计算。"""

import math
import os
from datetime import date, datetime, time, timedelta
from typing import Callable, Union
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

RENT_TIMEZONE = os.getenv("RENT_TIMEZONE", "Asia/Shanghai")

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 24 * 60 * 60


def business_tz() -> ZoneInfo:
    return ZoneInfo(RENT_TIMEZONE)


def local_now() -> datetime:
    """默认时钟：业务时区的当前时间（带时区）。"""
    return datetime.now(business_tz())


def to_local(value: Union[str, datetime, date]) -> datetime:
    """ISO 字符串 / datetime / date 统一转为业务时区的 datetime；无时区信息按业务时区解释。"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=business_tz())
    return value.astimezone(business_tz())


def next_local_midnight(moment: datetime) -> datetime:
    """发货时刻之后的下一个业务时区零点（发货次日 00:00）。"""
    local = to_local(moment)
    next_day = local.date() + timedelta(days=1)
    return datetime.combine(next_day, time.min, tzinfo=local.tzinfo)


def ceil_days(start: datetime, end: datetime) -> int:
    """两时刻间的天数，不足一天按一天计。"""
    seconds = (to_local(end) - to_local(start)).total_seconds()
    return math.ceil(seconds / SECONDS_PER_DAY)
