"""
周易起卦 - 金钱课六爻

爻值约定（自下而上第 1-6 爻）：
    6 老阴（动，变阳）  7 少阳  8 少阴  9 老阳（动，变阴）
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from bazi_utils import InvalidInput

OLD_YIN, YOUNG_YANG, YOUNG_YIN, OLD_YANG = 6, 7, 8, 9
LINE_VALUES = (OLD_YIN, YOUNG_YANG, YOUNG_YIN, OLD_YANG)
MOVING_VALUES = (OLD_YIN, OLD_YANG)

LINE_TYPES = {
    OLD_YIN: ("老阴", "⚋ 老阴 (动爻)"),
    YOUNG_YANG: ("少阳", "⚊ 少阳"),
    YOUNG_YIN: ("少阴", "⚋ 少阴"),
    OLD_YANG: ("老阳", "⚊ 老阳 (动爻)"),
}

# 八卦：三爻自下而上，1 为阳爻，0 为阴爻
TRIGRAMS = {
    "111": ("乾", "天", "☰", "刚健"),
    "110": ("兑", "泽", "☱", "喜悦"),
    "101": ("离", "火", "☲", "光明"),
    "100": ("震", "雷", "☳", "震动"),
    "011": ("巽", "风", "☴", "顺入"),
    "010": ("坎", "水", "☵", "陷险"),
    "001": ("艮", "山", "☶", "止静"),
    "000": ("坤", "地", "☷", "柔顺"),
}
_TRIGRAM_BY_NAME = {info[0]: info for info in TRIGRAMS.values()}

# (上卦, 下卦) -> (文王卦序, 卦名, 卦义)
HEXAGRAMS = {
    ("乾", "乾"): (1, "乾", "刚健中正，自强不息"),
    ("坤", "坤"): (2, "坤", "柔顺厚德，载物含弘"),
    ("坎", "震"): (3, "屯", "初生艰难，屯难聚积"),
    ("艮", "坎"): (4, "蒙", "启蒙教育，以正养正"),
    ("坎", "乾"): (5, "需", "等待时机，饮食宴乐"),
    ("乾", "坎"): (6, "讼", "争讼纠纷，终凶戒惧"),
    ("坤", "坎"): (7, "师", "兴师动众，正义之战"),
    ("坎", "坤"): (8, "比", "亲近辅助，择善而从"),
    ("巽", "乾"): (9, "小畜", "小有蓄积，以待时机"),
    ("乾", "兑"): (10, "履", "履道坦坦，素履之往"),
    ("坤", "乾"): (11, "泰", "天地交通，通泰安宁"),
    ("乾", "坤"): (12, "否", "阴阳不交，闭塞不通"),
    ("乾", "离"): (13, "同人", "志同道合，和同于人"),
    ("离", "乾"): (14, "大有", "日丽中天，万物繁盛"),
    ("坤", "艮"): (15, "谦", "谦虚谨慎，有终吉祥"),
    ("震", "坤"): (16, "豫", "欢乐豫悦，骄纵灾祸"),
    ("兑", "震"): (17, "随", "随机应变，和悦相随"),
    ("艮", "巽"): (18, "蛊", "蛊惑振救，整治腐败"),
    ("坤", "兑"): (19, "临", "居高临下，教民保民"),
    ("巽", "坤"): (20, "观", "观察审视，神道设教"),
    ("离", "震"): (21, "噬嗑", "咬合惩治，明罚敕法"),
    ("艮", "离"): (22, "贲", "装饰文饰，实质为本"),
    ("艮", "坤"): (23, "剥", "剥落衰败，以静制动"),
    ("坤", "震"): (24, "复", "一阳来复，回归正道"),
    ("乾", "震"): (25, "无妄", "真实无妄，顺应自然"),
    ("艮", "乾"): (26, "大畜", "大有蓄积，刚健笃实"),
    ("艮", "震"): (27, "颐", "颐养正道，自求口实"),
    ("兑", "巽"): (28, "大过", "大为过度，非常行事"),
    ("坎", "坎"): (29, "坎", "重重险阻，习坎行险"),
    ("离", "离"): (30, "离", "光明美丽，附着依托"),
    ("兑", "艮"): (31, "咸", "感应交流，男女相感"),
    ("震", "巽"): (32, "恒", "恒久不变，守恒持正"),
    ("乾", "艮"): (33, "遁", "隐退避让，保全实力"),
    ("震", "乾"): (34, "大壮", "阳盛壮大，非礼弗履"),
    ("离", "坤"): (35, "晋", "光明上进，顺畅发展"),
    ("坤", "离"): (36, "明夷", "光明受损，晦暗艰贞"),
    ("巽", "离"): (37, "家人", "家庭家道，利女正固"),
    ("离", "兑"): (38, "睽", "乖违背离，同异相成"),
    ("坎", "艮"): (39, "蹇", "艰难险阻，见险而止"),
    ("震", "坎"): (40, "解", "解除险难，缓和舒解"),
    ("艮", "兑"): (41, "损", "减损奉献，损下益上"),
    ("巽", "震"): (42, "益", "增益利益，损上益下"),
    ("兑", "乾"): (43, "夬", "决断果敢，刚决柔和"),
    ("乾", "巽"): (44, "姤", "邂逅相遇，阴柔渐长"),
    ("兑", "坤"): (45, "萃", "聚集汇合，顺应时势"),
    ("坤", "巽"): (46, "升", "上升进步，柔顺谦虚"),
    ("兑", "坎"): (47, "困", "困境受阻，坚守正道"),
    ("坎", "巽"): (48, "井", "井养不穷，往来无咎"),
    ("兑", "离"): (49, "革", "变革更新，顺天应人"),
    ("离", "巽"): (50, "鼎", "革新变革，稳定发展"),
    ("震", "震"): (51, "震", "震动奋起，戒惧修省"),
    ("艮", "艮"): (52, "艮", "止而不进，知止则吉"),
    ("巽", "艮"): (53, "渐", "渐进发展，循序前进"),
    ("震", "兑"): (54, "归妹", "少女出嫁，不可勉强"),
    ("震", "离"): (55, "丰", "丰盛盈满，明以动之"),
    ("离", "艮"): (56, "旅", "羁旅在外，谨慎小心"),
    ("巽", "巽"): (57, "巽", "谦逊柔顺，渗透前进"),
    ("兑", "兑"): (58, "兑", "欢悦和悦，以诚相待"),
    ("巽", "坎"): (59, "涣", "涣散离散，拯救团聚"),
    ("坎", "兑"): (60, "节", "节制调节，适可而止"),
    ("巽", "兑"): (61, "中孚", "内心诚信，豚鱼吉祥"),
    ("震", "艮"): (62, "小过", "小事过度，谨慎行事"),
    ("坎", "离"): (63, "既济", "事已成就，守成谨慎"),
    ("离", "坎"): (64, "未济", "事未成就，小心谨慎"),
}

POSITION_NAMES = ("初", "二", "三", "四", "五", "上")


@dataclass(frozen=True)
class Hexagram:
    """一个卦象（本卦或变卦）"""
    number: int
    name: str          # 全名，如 "水雷屯"、"乾为天"
    short_name: str    # 简称，如 "屯"
    meaning: str
    binary: str        # 初爻到上爻
    upper: str         # 上卦（外卦）名
    lower: str         # 下卦（内卦）名

    @property
    def upper_trigram(self) -> tuple:
        return _TRIGRAM_BY_NAME[self.upper]

    @property
    def lower_trigram(self) -> tuple:
        return _TRIGRAM_BY_NAME[self.lower]

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "name": self.name,
            "short_name": self.short_name,
            "meaning": self.meaning,
            "binary": self.binary,
            "upper": self.upper,
            "lower": self.lower,
        }


@dataclass(frozen=True)
class HexagramCast:
    """一次起卦的完整结果"""
    lines: tuple
    primary: Hexagram
    transformed: Optional[Hexagram]
    moving_lines: tuple
    world_line: int
    response_line: int
    line_names: tuple
    cast_time: Optional[datetime] = None
    line_types: tuple = field(default_factory=tuple)

    @property
    def binary(self) -> str:
        return self.primary.binary

    @property
    def has_change(self) -> bool:
        return bool(self.moving_lines)

    def to_dict(self) -> dict:
        return {
            "lines": list(self.lines),
            "binary": self.binary,
            "primary": self.primary.to_dict(),
            "transformed": self.transformed.to_dict() if self.transformed else None,
            "moving_lines": list(self.moving_lines),
            "world_line": self.world_line,
            "response_line": self.response_line,
            "line_names": list(self.line_names),
            "line_types": list(self.line_types),
            "cast_time": self.cast_time.isoformat() if self.cast_time else None,
        }


def lookup_trigram(bits: str) -> tuple:
    """三爻组合查八卦，表是穷举的，查不到说明程序有误。"""
    info = TRIGRAMS.get(bits)
    assert info is not None, f"unmapped trigram pattern: {bits!r}"
    return info


def hexagram_from_binary(binary: str) -> Hexagram:
    """六位二进制（初爻在前）→ 卦象"""
    assert len(binary) == 6, f"hexagram needs 6 lines, got {binary!r}"
    lower = lookup_trigram(binary[:3])
    upper = lookup_trigram(binary[3:])
    number, short_name, meaning = HEXAGRAMS[(upper[0], lower[0])]
    if upper[0] == lower[0]:
        name = f"{upper[0]}为{upper[1]}"
    else:
        name = f"{upper[1]}{lower[1]}{short_name}"
    return Hexagram(
        number=number,
        name=name,
        short_name=short_name,
        meaning=meaning,
        binary=binary,
        upper=upper[0],
        lower=lower[0],
    )


def find_world_response(binary: str) -> tuple:
    """
    寻世诀：比较内外卦的地（初/四）、人（二/五）、天（三/上）三爻。

    天同二世天变五，地同四世地变初，
    本宫六世三世异，人同游魂人变归。
    返回 (世爻, 应爻)。
    """
    earth_same = binary[0] == binary[3]
    man_same = binary[1] == binary[4]
    heaven_same = binary[2] == binary[5]

    if earth_same and man_same and heaven_same:
        world = 6
    elif not (earth_same or man_same or heaven_same):
        world = 3
    elif heaven_same and not earth_same and not man_same:
        world = 2
    elif earth_same and man_same and not heaven_same:
        world = 5
    elif earth_same and not man_same and not heaven_same:
        world = 4
    elif man_same and heaven_same and not earth_same:
        world = 1
    elif man_same:
        world = 4  # 游魂
    else:
        world = 3  # 归魂
    response = world + 3 if world <= 3 else world - 3
    return world, response


def line_name(position: int, is_yang: bool) -> str:
    """爻名，如 初九、六二、上六"""
    number = "九" if is_yang else "六"
    prefix = POSITION_NAMES[position - 1]
    if position == 1 or position == 6:
        return prefix + number
    return number + prefix


def time_seed(at: datetime) -> int:
    """按分钟取整的时间种子，同一分钟起卦结果相同。"""
    return int(at.strftime("%Y%m%d%H%M"))


class ZhouyiCalculator:
    """周易起卦计算器 - 金钱课起卦法"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.random = rng or random.Random()

    @staticmethod
    def toss_line(rng: random.Random) -> int:
        """三枚硬币：字为 2，花为 3，合计 6/7/8/9"""
        return sum(rng.choice((2, 3)) for _ in range(3))

    def cast_hexagram(self, at: Optional[datetime] = None) -> HexagramCast:
        """
        模拟金钱课起卦 (3枚硬币摇6次)。

        :param at: 传入时间则以该时间为种子确定性起卦（时间起卦）；
                   不传则随机起卦。
        """
        rng = random.Random(time_seed(at)) if at is not None else self.random
        lines = [self.toss_line(rng) for _ in range(6)]
        return self.cast_from_lines(lines, cast_time=at)

    def cast_from_lines(self, lines, cast_time: Optional[datetime] = None) -> HexagramCast:
        """由六个爻值（自下而上）直接排卦。"""
        lines = tuple(lines)
        if len(lines) != 6 or any(v not in LINE_VALUES for v in lines):
            raise InvalidInput(f"爻值必须是 6 个 6/7/8/9 的整数：{list(lines)}")

        original = ""
        future = ""
        moving = []
        names = []
        for position, value in enumerate(lines, start=1):
            is_yang = value in (YOUNG_YANG, OLD_YANG)
            original += "1" if is_yang else "0"
            if value in MOVING_VALUES:
                moving.append(position)
                future += "0" if is_yang else "1"
            else:
                future += "1" if is_yang else "0"
            names.append(line_name(position, is_yang))

        world, response = find_world_response(original)
        return HexagramCast(
            lines=lines,
            primary=hexagram_from_binary(original),
            transformed=hexagram_from_binary(future) if moving else None,
            moving_lines=tuple(moving),
            world_line=world,
            response_line=response,
            line_names=tuple(names),
            cast_time=cast_time,
            line_types=tuple(LINE_TYPES[v][0] for v in lines),
        )

    def format_hexagram_display(self, cast: HexagramCast) -> str:
        """格式化卦象文本，供提示词与展示使用。"""
        primary = cast.primary
        upper = primary.upper_trigram
        lower = primary.lower_trigram
        lines = ["═══ 周易起卦结果 ═══", ""]
        lines.append(f"【本卦】{primary.name}（第{primary.number}卦）")
        lines.append(f"   卦义：{primary.meaning}")
        lines.append(f"   上卦：{upper[2]} {upper[0]}({upper[1]})")
        lines.append(f"   下卦：{lower[2]} {lower[0]}({lower[1]})")
        lines.append(f"   世爻：第{cast.world_line}爻  应爻：第{cast.response_line}爻")

        if cast.has_change:
            moving_names = "、".join(cast.line_names[p - 1] for p in cast.moving_lines)
            lines.append(f"\n【动爻】第 {', '.join(map(str, cast.moving_lines))} 爻（{moving_names}）")
            lines.append(f"\n【变卦】{cast.transformed.name}（第{cast.transformed.number}卦）")
            lines.append(f"   卦义：{cast.transformed.meaning}")
        else:
            lines.append("\n【动爻】无动爻（六爻皆静）")

        lines.append("\n--- 逐爻详情 ---")
        for position, value in enumerate(cast.lines, start=1):
            lines.append(f"第{position}爻 {cast.line_names[position - 1]}: {LINE_TYPES[value][1]}")
        return "\n".join(lines)
