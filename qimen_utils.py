"""
奇门遁甲排盘 - 时家转盘（拆补法定局）

流程：四柱 → 节气定阴阳遁 → 符头定三元 → 局数 → 地盘三奇六仪
      → 旬首定值符值使 → 转九星、八门、八神 → 九宫数据
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from bazi_utils import (
    DIZHI,
    TIANGAN,
    DayBoundaryRule,
    FourPillars,
    ganzhi_index,
    get_current_solar_term,
    get_four_pillars,
    parse_datetime,
    stem_polarity,
)

# 九宫（洛书排列，按展示顺序）
NINE_PALACES = (
    (4, "四宫（巽）", "东南"),
    (9, "九宫（离）", "南"),
    (2, "二宫（坤）", "西南"),
    (3, "三宫（震）", "东"),
    (5, "五宫（中）", "中央"),
    (7, "七宫（兑）", "西"),
    (8, "八宫（艮）", "东北"),
    (1, "一宫（坎）", "北"),
    (6, "六宫（乾）", "西北"),
)

CENTER = 5
CENTER_LODGE = 2  # 中五寄坤二

# 节气 -> [上元, 中元, 下元] 局数
BUREAU_TABLE = {
    "冬至": (1, 7, 4), "小寒": (2, 8, 5), "大寒": (3, 9, 6),
    "立春": (8, 5, 2), "雨水": (9, 6, 3), "惊蛰": (1, 7, 4),
    "春分": (3, 9, 6), "清明": (4, 1, 7), "谷雨": (5, 2, 8),
    "立夏": (4, 1, 7), "小满": (5, 2, 8), "芒种": (6, 3, 9),
    "夏至": (9, 3, 6), "小暑": (8, 2, 5), "大暑": (7, 1, 4),
    "立秋": (2, 5, 8), "处暑": (1, 4, 7), "白露": (9, 3, 6),
    "秋分": (7, 1, 4), "寒露": (6, 9, 3), "霜降": (5, 8, 2),
    "立冬": (6, 9, 3), "小雪": (5, 8, 2), "大雪": (4, 7, 1),
}

# 冬至到芒种用阳遁，夏至到大雪用阴遁
YANG_ESCAPE_TERMS = frozenset((
    "冬至", "小寒", "大寒", "立春", "雨水", "惊蛰",
    "春分", "清明", "谷雨", "立夏", "小满", "芒种",
))

YUAN_NAMES = ("上元", "中元", "下元")

# 三奇六仪布地盘的顺序
EARTH_STEM_ORDER = ("戊", "己", "庚", "辛", "壬", "癸", "丁", "丙", "乙")

# 旬首地支 -> 遁甲的六仪
XUN_STEMS = {0: "戊", 10: "己", 8: "庚", 6: "辛", 4: "壬", 2: "癸"}

ORIGINAL_STARS = {
    1: "天蓬", 2: "天芮", 3: "天冲", 4: "天辅", 5: "天禽",
    6: "天心", 7: "天柱", 8: "天任", 9: "天英",
}
ORIGINAL_DOORS = {
    1: "休门", 2: "死门", 3: "伤门", 4: "杜门",
    6: "开门", 7: "惊门", 8: "生门", 9: "景门",
}

# 外八宫顺时针：坎 艮 震 巽 离 坤 兑 乾
RING = (1, 8, 3, 4, 9, 2, 7, 6)

DEITIES = ("值符", "螣蛇", "太阴", "六合", "白虎", "玄武", "九地", "九天")

GOOD_DOORS = frozenset(("开门", "休门", "生门"))
GOOD_STARS = frozenset(("天辅", "天心", "天任"))


def is_good_door(door: str) -> bool:
    """吉门：开、休、生"""
    return door in GOOD_DOORS


def is_good_star(star: str) -> bool:
    """吉星：天辅、天心、天任"""
    return star in GOOD_STARS


@dataclass(frozen=True)
class Palace:
    position: int
    name: str
    direction: str
    earth_stem: str
    heaven_stem: str
    star: str
    door: str
    deity: str
    is_center: bool
    # 中五寄坤：随天芮一同转动的中宫干与天禽
    lodged_stem: str = ""
    lodged_star: str = ""

    @property
    def is_auspicious(self) -> bool:
        """中宫不参与吉凶评分"""
        if self.is_center:
            return False
        return is_good_door(self.door) or is_good_star(self.star)

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "name": self.name,
            "direction": self.direction,
            "earth_stem": self.earth_stem,
            "heaven_stem": self.heaven_stem,
            "star": self.star,
            "door": self.door,
            "deity": self.deity,
            "is_center": self.is_center,
            "lodged_stem": self.lodged_stem,
            "lodged_star": self.lodged_star,
            "is_auspicious": self.is_auspicious,
        }


@dataclass
class QiMenChart:
    id: str
    timestamp: int
    date_time: datetime
    year: str
    month: str
    day: str
    hour: str
    year_stem_polarity: str
    solar_term: str
    yuan: str
    escape_type: str  # "yang" / "yin"
    bureau_number: int
    duty_chief: str
    duty_door: str
    palaces: list
    key_points: list = field(default_factory=list)

    @property
    def four_pillars(self) -> FourPillars:
        return FourPillars(self.year, self.month, self.day, self.hour)

    def palace(self, position: int) -> Palace:
        for item in self.palaces:
            if item.position == position:
                return item
        raise KeyError(position)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "date_time": self.date_time.isoformat(),
            "year": self.year,
            "month": self.month,
            "day": self.day,
            "hour": self.hour,
            "year_stem_polarity": self.year_stem_polarity,
            "solar_term": self.solar_term,
            "yuan": self.yuan,
            "escape_type": self.escape_type,
            "bureau_number": self.bureau_number,
            "duty_chief": self.duty_chief,
            "duty_door": self.duty_door,
            "palaces": [p.to_dict() for p in self.palaces],
            "key_points": list(self.key_points),
        }


def _step(position: int, forward: bool) -> int:
    """九宫按 1..9 顺数或逆数一步"""
    if forward:
        return position % 9 + 1
    return 9 if position == 1 else position - 1


def _lodge(position: int) -> int:
    return CENTER_LODGE if position == CENTER else position


def _rotate(origin: int, offset: int) -> int:
    return RING[(RING.index(origin) + offset) % 8]


class QiMenCalculator:
    """奇门遁甲时家转盘排盘器"""

    @staticmethod
    def get_yuan(day_pillar: str) -> int:
        """
        符头定三元：取日柱所在的甲/己符头，
        符头地支为子午卯酉→上元，寅申巳亥→中元，辰戌丑未→下元。
        """
        day_idx = ganzhi_index(day_pillar)
        fu_tou_branch = (day_idx - day_idx % 5) % 12
        if fu_tou_branch in (0, 6, 3, 9):
            return 0
        if fu_tou_branch in (2, 8, 5, 11):
            return 1
        return 2

    @staticmethod
    def get_earth_plate(bureau: int, is_yang: bool) -> dict:
        """地盘：戊起局数宫，阳遁顺布、阴遁逆布"""
        plate = {}
        position = bureau
        for stem in EARTH_STEM_ORDER:
            plate[position] = stem
            position = _step(position, is_yang)
        return plate

    def generate_chart(self, value=None, rule=DayBoundaryRule.MODERN) -> QiMenChart:
        """
        按时间排出奇门盘。

        :param value: datetime 或 ISO 时间文本；为 None 时取当前时间
        :param rule: 子时换日规则
        """
        dt = datetime.now().replace(microsecond=0) if value is None else parse_datetime(value)
        pillars = get_four_pillars(dt, rule)

        _, term_name, _ = get_current_solar_term(dt)
        is_yang = term_name in YANG_ESCAPE_TERMS
        yuan = self.get_yuan(pillars.day)
        bureau = BUREAU_TABLE[term_name][yuan]
        earth = self.get_earth_plate(bureau, is_yang)
        stem_palace = {stem: pos for pos, stem in earth.items()}

        hour_stem = TIANGAN.index(pillars.hour[0])
        hour_branch = DIZHI.index(pillars.hour[1])
        xun_branch = (hour_branch - hour_stem) % 12
        xun_stem = XUN_STEMS[xun_branch]
        xun_palace = stem_palace[xun_stem]
        lead = _lodge(xun_palace)

        # 值符随时干（甲时随旬首六仪）
        duty_chief = ORIGINAL_STARS[xun_palace]
        target_stem = xun_stem if pillars.hour[0] == "甲" else pillars.hour[0]
        star_dest = _lodge(stem_palace[target_stem])
        star_offset = RING.index(star_dest) - RING.index(lead)

        # 值使随时支，九宫顺逆数
        duty_door = ORIGINAL_DOORS[lead]
        door_dest = xun_palace
        for _ in range((hour_branch - xun_branch) % 12):
            door_dest = _step(door_dest, is_yang)
        door_dest = _lodge(door_dest)
        door_offset = RING.index(door_dest) - RING.index(lead)

        stars = {}
        heaven = {}
        doors = {}
        for origin in RING:
            dest = _rotate(origin, star_offset)
            stars[dest] = ORIGINAL_STARS[origin]
            heaven[dest] = earth[origin]
            doors[_rotate(origin, door_offset)] = ORIGINAL_DOORS[origin]
        lodge_dest = _rotate(CENTER_LODGE, star_offset)

        deities = {}
        start = RING.index(star_dest)
        direction = 1 if is_yang else -1
        for i, deity in enumerate(DEITIES):
            deities[RING[(start + direction * i) % 8]] = deity

        palaces = []
        for position, name, palace_direction in NINE_PALACES:
            is_center = position == CENTER
            palaces.append(Palace(
                position=position,
                name=name,
                direction=palace_direction,
                earth_stem=earth[position],
                heaven_stem=earth[CENTER] if is_center else heaven[position],
                star=ORIGINAL_STARS[CENTER] if is_center else stars[position],
                door="" if is_center else doors[position],
                deity="" if is_center else deities[position],
                is_center=is_center,
                lodged_stem=earth[CENTER] if position == lodge_dest else "",
                lodged_star=ORIGINAL_STARS[CENTER] if position == lodge_dest else "",
            ))

        timestamp = int(dt.timestamp() * 1000)
        chart = QiMenChart(
            id=f"qimen-{timestamp}",
            timestamp=timestamp,
            date_time=dt,
            year=pillars.year,
            month=pillars.month,
            day=pillars.day,
            hour=pillars.hour,
            year_stem_polarity=stem_polarity(pillars.year[0]),
            solar_term=term_name,
            yuan=YUAN_NAMES[yuan],
            escape_type="yang" if is_yang else "yin",
            bureau_number=bureau,
            duty_chief=duty_chief,
            duty_door=duty_door,
            palaces=palaces,
        )
        chart.key_points = generate_key_points(chart)
        return chart


def generate_key_points(chart: QiMenChart) -> list:
    """生成盘面分析要点"""
    points = []
    escape = "阳" if chart.escape_type == "yang" else "阴"
    points.append(f"当前为{escape}遁{chart.bureau_number}局")
    points.append(f"值符为{chart.duty_chief}，值使为{chart.duty_door}")

    center = chart.palace(CENTER)
    door_label = center.door or "无门"
    mood = "生发" if "生" in center.door else "谨慎"
    points.append(f"中宫{center.star}{door_label}，主事宜{mood}")

    good = [p for p in chart.palaces if not p.is_center and is_good_door(p.door)]
    if good:
        points.append("吉门位于：" + "、".join(f"{p.direction}方{p.door}" for p in good))
    return points


def format_chart_display(chart: QiMenChart) -> str:
    """排盘文本，供提示词使用"""
    escape = "阳遁" if chart.escape_type == "yang" else "阴遁"
    lines = [
        "═══ 奇门遁甲排盘 ═══",
        f"四柱：{chart.year}年 {chart.month}月 {chart.day}日 {chart.hour}时",
        f"节气：{chart.solar_term}（{chart.yuan}）  {escape}{chart.bureau_number}局",
        f"值符：{chart.duty_chief}  值使：{chart.duty_door}",
        "",
        "--- 九宫 ---",
    ]
    for p in chart.palaces:
        if p.is_center:
            lines.append(f"{p.name}·{p.direction}：地盘{p.earth_stem} {p.star}")
            continue
        marks = []
        if is_good_door(p.door):
            marks.append("吉门")
        if is_good_star(p.star):
            marks.append("吉星")
        suffix = f"（{'、'.join(marks)}）" if marks else ""
        heaven = p.heaven_stem + (f"（寄{p.lodged_stem}）" if p.lodged_stem else "")
        star = p.star + (f"（寄{p.lodged_star}）" if p.lodged_star else "")
        lines.append(
            f"{p.name}·{p.direction}：天盘{heaven} 地盘{p.earth_stem} "
            f"{star} {p.door} {p.deity}{suffix}"
        )
    lines.append("")
    lines.append("--- 要点 ---")
    lines.extend(chart.key_points)
    return "\n".join(lines)
