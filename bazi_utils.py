"""
八字工具类 - 干支历法引擎

负责把公历时间换算成四柱干支（年、月、日、时），包括：
- 节气时刻的近似计算（固定偏移表 + 回归年线性漂移）
- 立春换年、十二节换月
- 子时换日规则（现代 / 传统子平 / 早晚子）
- 大运起运参数（顺逆、起运岁数、首步大运）

所有函数都是纯函数，可在任意线程中重复调用。
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional, Union

# 天干
TIANGAN = ("甲", "乙", "丙", "丁", "戊", "己", "庚", "辛", "壬", "癸")

# 地支
DIZHI = ("子", "丑", "寅", "卯", "辰", "巳", "午", "未", "申", "酉", "戌", "亥")

# 生肖（与地支对应）
ZODIAC_ANIMALS = ("鼠", "牛", "虎", "兔", "龙", "蛇", "马", "羊", "猴", "鸡", "狗", "猪")

# 天干地支五行
WUXING_MAPPING = {
    "甲": "木", "乙": "木",
    "丙": "火", "丁": "火",
    "戊": "土", "己": "土",
    "庚": "金", "辛": "金",
    "壬": "水", "癸": "水",
    "子": "水", "亥": "水",
    "寅": "木", "卯": "木",
    "巳": "火", "午": "火",
    "申": "金", "酉": "金",
    "辰": "土", "戌": "土", "丑": "土", "未": "土",
}

YANG_STEMS = frozenset(("甲", "丙", "戊", "庚", "壬"))

# 六十甲子：干支同步前进，60 步回到甲子
GANZHI_CYCLE = tuple(TIANGAN[i % 10] + DIZHI[i % 12] for i in range(60))
_GANZHI_INDEX = {pair: i for i, pair in enumerate(GANZHI_CYCLE)}

# 二十四节气，索引 0 为小寒
SOLAR_TERM_NAMES = (
    "小寒", "大寒", "立春", "雨水", "惊蛰", "春分",
    "清明", "谷雨", "立夏", "小满", "芒种", "夏至",
    "小暑", "大暑", "立秋", "处暑", "白露", "秋分",
    "寒露", "霜降", "立冬", "小雪", "大雪", "冬至",
)

# 各节气相对小寒的分钟偏移（常量，不可调整）
SOLAR_TERM_OFFSETS = (
    0, 21208, 42467, 63836, 85337, 107014, 128867, 150921, 173149, 195551,
    218072, 240693, 263343, 285961, 308477, 330856, 353050, 375027, 396749,
    418202, 439384, 460312, 481030, 501583,
)

SOLAR_TERM_BASE = datetime(1900, 1, 6, 2, 5, 0)
MINUTES_PER_TROPICAL_YEAR = 525948.76
LICHUN_INDEX = 2

# 十二节（偶数索引）对应的月支：小寒→丑，立春→寅 ... 大雪→子
JIE_BRANCHES = {idx: (idx // 2 + 1) % 12 for idx in range(0, 24, 2)}

# 年干定寅月起干：甲己丙、乙庚戊、丙辛庚、丁壬壬、戊癸甲
MONTH_STEM_START = (2, 4, 6, 8, 0)

# 日干定子时起干：甲己甲、乙庚丙、丙辛戊、丁壬庚、戊癸壬
HOUR_STEM_START = (0, 2, 4, 6, 8)

YEAR_EPOCH = 1984              # 甲子年
DAY_EPOCH = date(2000, 1, 1)   # 戊午日
DAY_EPOCH_STEM = 4
DAY_EPOCH_BRANCH = 6

MIN_SUPPORTED_YEAR = 1000
MAX_SUPPORTED_YEAR = 3000

# 十二时辰
TIME_SLOTS = (
    {"name": "子时", "range": "23:00-01:00", "hours": (23, 0), "zhi_index": 0},
    {"name": "丑时", "range": "01:00-03:00", "hours": (1, 2), "zhi_index": 1},
    {"name": "寅时", "range": "03:00-05:00", "hours": (3, 4), "zhi_index": 2},
    {"name": "卯时", "range": "05:00-07:00", "hours": (5, 6), "zhi_index": 3},
    {"name": "辰时", "range": "07:00-09:00", "hours": (7, 8), "zhi_index": 4},
    {"name": "巳时", "range": "09:00-11:00", "hours": (9, 10), "zhi_index": 5},
    {"name": "午时", "range": "11:00-13:00", "hours": (11, 12), "zhi_index": 6},
    {"name": "未时", "range": "13:00-15:00", "hours": (13, 14), "zhi_index": 7},
    {"name": "申时", "range": "15:00-17:00", "hours": (15, 16), "zhi_index": 8},
    {"name": "酉时", "range": "17:00-19:00", "hours": (17, 18), "zhi_index": 9},
    {"name": "戌时", "range": "19:00-21:00", "hours": (19, 20), "zhi_index": 10},
    {"name": "亥时", "range": "21:00-23:00", "hours": (21, 22), "zhi_index": 11},
)


class InvalidInput(ValueError):
    """输入的时间、性别或干支不合法"""


class DayBoundaryRule(str, Enum):
    """子时换日规则"""
    MODERN = "modern"            # 00:00 换天
    TRADITIONAL = "traditional"  # 23:00 换天（传统子平）
    EARLY_LATE = "earlyLate"     # 23:00 后日柱不变，时柱按次日起


def resolve_day_boundary_rule(rule) -> DayBoundaryRule:
    """兼容布尔值写法：True 为传统子平，False/None 为现代规则。"""
    if rule is True:
        return DayBoundaryRule.TRADITIONAL
    if rule is False or rule is None:
        return DayBoundaryRule.MODERN
    if isinstance(rule, DayBoundaryRule):
        return rule
    try:
        return DayBoundaryRule(str(rule))
    except ValueError:
        raise InvalidInput(f"未知的换日规则：{rule}") from None


@dataclass(frozen=True)
class FourPillars:
    """四柱干支"""
    year: str
    month: str
    day: str
    hour: str

    def as_list(self) -> list:
        return [self.year, self.month, self.day, self.hour]

    def to_dict(self) -> dict:
        return {"year": self.year, "month": self.month, "day": self.day, "hour": self.hour}

    def __str__(self) -> str:
        return " ".join(self.as_list())


def parse_datetime(value: Union[str, datetime, date]) -> datetime:
    """
    把输入解析为本地（无时区）datetime。

    - datetime：带时区的按其墙上时间处理
    - date：取当天正午
    - str：ISO-8601 文本，如 "2024-02-10T23:30" 或 "2024-02-10 23:30:00"

    无法解析或年份超出支持范围时抛出 InvalidInput，绝不回退到当前时间。
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time(12, 0))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidInput("时间不能为空")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidInput(f"无法解析的时间：{value}") from None
    else:
        raise InvalidInput(f"不支持的时间类型：{type(value).__name__}")

    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None)
    if not MIN_SUPPORTED_YEAR <= parsed.year <= MAX_SUPPORTED_YEAR:
        raise InvalidInput(
            f"年份超出支持范围（{MIN_SUPPORTED_YEAR}-{MAX_SUPPORTED_YEAR}）：{parsed.year}"
        )
    return parsed


# ---------------------------------------------------------------------------
# 节气
# ---------------------------------------------------------------------------

def get_solar_term(year: int, index: int) -> datetime:
    """
    计算某年第 index 个节气的时刻（本地时间，毫秒精度）。

    :param year: 公历年
    :param index: 0-23，0 为小寒，2 为立春，23 为冬至
    """
    if not 0 <= index < 24:
        raise InvalidInput(f"节气索引必须在 0-23 之间：{index}")
    total_minutes = (year - 1900) * MINUTES_PER_TROPICAL_YEAR + SOLAR_TERM_OFFSETS[index]
    # 毫秒取整向零截断
    return SOLAR_TERM_BASE + timedelta(milliseconds=int(total_minutes * 60000))


def get_current_solar_term(dt: datetime) -> tuple:
    """返回 dt 所处节气：(索引, 名称, 交节时刻)。"""
    candidates = []
    for y in (dt.year - 1, dt.year, dt.year + 1):
        for idx in range(24):
            candidates.append((get_solar_term(y, idx), idx))
    current = None
    for instant, idx in sorted(candidates):
        if instant <= dt:
            current = (idx, SOLAR_TERM_NAMES[idx], instant)
        else:
            break
    return current


def _jie_terms_around(year: int) -> list:
    """year-1 ~ year+1 三年内的十二节时刻，按时间升序。"""
    terms = []
    for y in (year - 1, year, year + 1):
        for idx in range(0, 24, 2):
            terms.append(get_solar_term(y, idx))
    terms.sort()
    return terms


# ---------------------------------------------------------------------------
# 四柱
# ---------------------------------------------------------------------------

def ganzhi_at(index: int) -> str:
    return GANZHI_CYCLE[index % 60]


def ganzhi_index(pair: str) -> int:
    """干支在六十甲子中的序号，不合法时抛出 InvalidInput。"""
    try:
        return _GANZHI_INDEX[pair.strip()]
    except (KeyError, AttributeError):
        raise InvalidInput(f"不是合法的六十甲子干支：{pair}") from None


def is_valid_ganzhi(pair) -> bool:
    return isinstance(pair, str) and pair.strip() in _GANZHI_INDEX


def _pillar(stem_index: int, branch_index: int) -> str:
    return TIANGAN[stem_index % 10] + DIZHI[branch_index % 12]


def get_solar_year(dt: datetime) -> int:
    """以立春为界的干支纪年所属公历年。"""
    if dt < get_solar_term(dt.year, LICHUN_INDEX):
        return dt.year - 1
    return dt.year


def get_year_ganzhi(dt: datetime) -> str:
    """年柱：立春前算上一年，以 1984 甲子年为基准。"""
    diff = get_solar_year(dt) - YEAR_EPOCH
    return _pillar(diff % 10, diff % 12)


def get_month_branch_index(dt: datetime) -> int:
    """月支：取 dt 之前（含）最近的一个节。"""
    year = dt.year
    boundaries = [(get_solar_term(year - 1, 22), 0)]
    boundaries.extend((get_solar_term(year, idx), JIE_BRANCHES[idx]) for idx in range(0, 24, 2))

    branch = 0
    for instant, zhi in reversed(boundaries):
        if dt >= instant:
            branch = zhi
            break
    return branch


def get_month_ganzhi(dt: datetime) -> str:
    """月柱：月支由节气决定，月干由（立春调整后的）年干起寅月推出。"""
    branch = get_month_branch_index(dt)
    year_stem = TIANGAN.index(get_year_ganzhi(dt)[0])
    stem = (MONTH_STEM_START[year_stem % 5] + (branch + 10) % 12) % 10
    return _pillar(stem, branch)


def get_day_ganzhi(day: Union[date, datetime]) -> str:
    """日柱：按公历日差推算，2000-01-01 为戊午日。"""
    if isinstance(day, datetime):
        day = day.date()
    diff = day.toordinal() - DAY_EPOCH.toordinal()
    return _pillar(DAY_EPOCH_STEM + diff, DAY_EPOCH_BRANCH + diff)


def get_hour_branch_index(hour: int) -> int:
    if not 0 <= hour <= 23:
        raise InvalidInput(f"小时必须在 0-23 之间：{hour}")
    return ((hour + 1) // 2) % 12


def get_hour_ganzhi(dt: datetime, day_basis: Optional[Union[date, datetime]] = None) -> str:
    """时柱：时支由小时决定，时干由 day_basis 那天的日干起子时推出。"""
    branch = get_hour_branch_index(dt.hour)
    day_stem = TIANGAN.index(get_day_ganzhi(day_basis or dt)[0])
    stem = (HOUR_STEM_START[day_stem % 5] + branch) % 10
    return _pillar(stem, branch)


def get_four_pillars(value, rule=DayBoundaryRule.MODERN) -> FourPillars:
    """
    计算四柱。

    年柱、月柱始终按真实时刻；23 点时：
    - traditional：日柱与时柱都按次日
    - earlyLate：日柱不变，时柱按次日起干
    """
    dt = parse_datetime(value)
    rule = resolve_day_boundary_rule(rule)
    day_basis = dt.date()
    hour_basis = dt.date()
    if dt.hour == 23:
        if rule is DayBoundaryRule.TRADITIONAL:
            day_basis = day_basis + timedelta(days=1)
            hour_basis = day_basis
        elif rule is DayBoundaryRule.EARLY_LATE:
            hour_basis = hour_basis + timedelta(days=1)

    return FourPillars(
        year=get_year_ganzhi(dt),
        month=get_month_ganzhi(dt),
        day=get_day_ganzhi(day_basis),
        hour=get_hour_ganzhi(dt, hour_basis),
    )


# ---------------------------------------------------------------------------
# 杂项
# ---------------------------------------------------------------------------

def get_time_slot(hour: int) -> dict:
    """根据小时获取时辰信息"""
    return TIME_SLOTS[get_hour_branch_index(hour)]


def get_time_range(hour: int) -> str:
    return get_time_slot(hour)["range"]


def get_wuxing(char: str) -> str:
    return WUXING_MAPPING.get(char, "土")


def get_zodiac_animal(year: int) -> str:
    """以 1900 鼠年为基准"""
    return ZODIAC_ANIMALS[(year - 1900) % 12]


def stem_polarity(stem: str) -> str:
    """天干阴阳：返回 "yang" 或 "yin"。"""
    if stem not in TIANGAN:
        raise InvalidInput(f"不是合法的天干：{stem}")
    return "yang" if stem in YANG_STEMS else "yin"


# ---------------------------------------------------------------------------
# 大运
# ---------------------------------------------------------------------------

GENDERS = ("男", "女")


def is_forward_luck(year_stem: str, gender: str) -> bool:
    """阳男阴女顺行，阴男阳女逆行。"""
    if gender not in GENDERS:
        raise InvalidInput(f"性别必须是 男 或 女：{gender}")
    is_yang = stem_polarity(year_stem) == "yang"
    return is_yang if gender == "男" else not is_yang


def luck_pillar_sequence(first: str, forward: bool, steps: int = 10) -> list:
    """从首步大运起，沿六十甲子顺排或逆排 steps 步。"""
    start = ganzhi_index(first)
    step = 1 if forward else -1
    return [ganzhi_at(start + step * i) for i in range(steps)]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class LuckInfo:
    """起运参数"""
    pillars: FourPillars
    gender: str
    forward: bool
    start_age: int
    start_date: date
    first_da_yun: str
    sequence: list = field(default_factory=list)

    @property
    def direction_label(self) -> str:
        return "顺行" if self.forward else "逆行"

    def to_dict(self) -> dict:
        return {
            "pillars": self.pillars.to_dict(),
            "gender": self.gender,
            "forward": self.forward,
            "direction": self.direction_label,
            "start_age": self.start_age,
            "start_date": self.start_date.isoformat(),
            "first_da_yun": self.first_da_yun,
            "sequence": list(self.sequence),
        }


def calculate_luck_info(value, gender: str, rule=DayBoundaryRule.TRADITIONAL) -> LuckInfo:
    """
    计算大运起运信息。

    顺行取下一个节，逆行取上一个节；三天折一年，起运岁数至少 1 岁。
    首步大运为月柱在六十甲子中的下一位（顺）或上一位（逆）。
    """
    dt = parse_datetime(value)
    pillars = get_four_pillars(dt, rule)
    forward = is_forward_luck(pillars.year[0], gender)

    terms = _jie_terms_around(dt.year)
    prev_jie, next_jie = terms[0], terms[-1]
    for current, following in zip(terms, terms[1:]):
        if current <= dt < following:
            prev_jie, next_jie = current, following
            break

    target = next_jie if forward else prev_jie
    diff_days = abs((dt - target).total_seconds()) / 86400
    start_age = max(1, _round_half_up(diff_days / 3))
    start_date = dt.date() + timedelta(days=math.floor(diff_days / 3 * 365.25))

    month_index = ganzhi_index(pillars.month)
    first = ganzhi_at(month_index + (1 if forward else -1))

    return LuckInfo(
        pillars=pillars,
        gender=gender,
        forward=forward,
        start_age=start_age,
        start_date=start_date,
        first_da_yun=first,
        sequence=luck_pillar_sequence(first, forward),
    )
