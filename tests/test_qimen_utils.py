#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
奇门遁甲排盘单元测试
"""

from datetime import datetime

import pytest

from bazi_utils import InvalidInput
from qimen_utils import (
    EARTH_STEM_ORDER,
    QiMenCalculator,
    format_chart_display,
    is_good_door,
    is_good_star,
)


class TestPredicates:
    """吉门吉星判断测试类"""

    @pytest.mark.parametrize("door, expected", [
        ("开门", True), ("休门", True), ("生门", True),
        ("死门", False), ("惊门", False), ("", False),
    ])
    def test_good_doors(self, door, expected):
        assert is_good_door(door) is expected

    @pytest.mark.parametrize("star, expected", [
        ("天辅", True), ("天心", True), ("天任", True),
        ("天蓬", False), ("天禽", False),
    ])
    def test_good_stars(self, star, expected):
        assert is_good_star(star) is expected


class TestYuan:
    """符头定三元测试类"""

    @pytest.mark.parametrize("day, expected", [
        ("甲子", 0), ("己卯", 0), ("庚辰", 0),
        ("甲申", 1), ("甲辰", 2), ("己丑", 2),
    ])
    def test_get_yuan(self, day, expected):
        assert QiMenCalculator.get_yuan(day) == expected

    def test_invalid_day(self):
        with pytest.raises(InvalidInput):
            QiMenCalculator.get_yuan("甲丑")


class TestEarthPlate:
    """地盘测试类"""

    def test_yang_runs_forward(self):
        plate = QiMenCalculator.get_earth_plate(1, True)
        assert plate[1] == "戊"
        assert plate[2] == "己"
        assert plate[9] == "乙"

    def test_yin_runs_backward(self):
        plate = QiMenCalculator.get_earth_plate(9, False)
        assert plate[9] == "戊"
        assert plate[8] == "己"
        assert plate[1] == "乙"

    def test_covers_all_palaces(self):
        for bureau in range(1, 10):
            for is_yang in (True, False):
                plate = QiMenCalculator.get_earth_plate(bureau, is_yang)
                assert sorted(plate) == list(range(1, 10))
                assert sorted(plate.values()) == sorted(EARTH_STEM_ORDER)


class TestChart:
    """时盘生成测试类"""

    def setup_method(self):
        self.calculator = QiMenCalculator()

    def test_structure(self):
        """测试：九宫齐全，只有五宫是中宫且不参与吉凶"""
        chart = self.calculator.generate_chart(datetime(2024, 8, 15, 10, 0))
        assert len(chart.palaces) == 9
        assert sorted(p.position for p in chart.palaces) == list(range(1, 10))
        centers = [p for p in chart.palaces if p.is_center]
        assert [p.position for p in centers] == [5]
        assert centers[0].is_auspicious is False

        outer = [p for p in chart.palaces if not p.is_center]
        assert len({p.door for p in outer}) == 8
        assert len({p.star for p in outer}) == 8
        assert len({p.deity for p in outer}) == 8

    def test_spring_festival_chart(self):
        """测试：2024-02-10 12:00 立春下元阳遁二局"""
        # Given
        moment = datetime(2024, 2, 10, 12, 0)
        # When
        chart = self.calculator.generate_chart(moment)
        # Then
        assert (chart.year, chart.month, chart.day, chart.hour) == ("甲辰", "丙寅", "甲辰", "庚午")
        assert chart.solar_term == "立春"
        assert chart.escape_type == "yang"
        assert chart.yuan == "下元"
        assert chart.bureau_number == 2
        assert chart.duty_chief == "天芮"
        assert chart.duty_door == "死门"
        assert chart.year_stem_polarity == "yang"

        # 值符随时干庚落四宫
        assert chart.palace(4).star == "天芮"
        assert chart.palace(4).heaven_stem == "戊"
        assert chart.palace(4).deity == "值符"
        # 值使随时支落八宫
        assert chart.palace(8).door == "死门"
        # 中宫辛随天芮寄到四宫
        assert chart.palace(4).lodged_stem == "辛"
        assert chart.palace(4).lodged_star == "天禽"

    def test_heaven_plate_carries_all_nine_stems(self):
        """测试：转盘后外八宫天盘（含寄宫干）九干齐全"""
        for day in (10, 11, 12):
            for hour in range(1, 24, 2):
                chart = self.calculator.generate_chart(datetime(2024, 2, day, hour, 0))
                outer = [p for p in chart.palaces if not p.is_center]
                stems = [p.heaven_stem for p in outer] + [p.lodged_stem for p in outer if p.lodged_stem]
                assert sorted(stems) == sorted(EARTH_STEM_ORDER)
                assert len([p for p in outer if p.lodged_star]) == 1

    def test_xun_head_in_center(self):
        """测试：甲午旬首辛在中宫时值符为天禽，旬首随天芮寄坤二宫"""
        # Given: 2024-02-12 12:00 为甲午时，阳遁二局辛在五宫
        moment = datetime(2024, 2, 12, 12, 0)
        # When
        chart = self.calculator.generate_chart(moment)
        # Then
        assert chart.hour == "甲午"
        assert chart.bureau_number == 2
        assert chart.duty_chief == "天禽"
        palace = chart.palace(2)
        assert palace.deity == "值符"
        assert palace.star == "天芮"
        assert palace.lodged_star == "天禽"
        assert palace.lodged_stem == "辛"
        assert "天盘戊（寄辛）" in format_chart_display(chart)

    def test_yin_escape_in_autumn(self):
        chart = self.calculator.generate_chart("2024-08-15T10:00")
        assert chart.solar_term == "立秋"
        assert chart.escape_type == "yin"
        assert chart.yuan in ("上元", "中元", "下元")

    def test_key_points_and_display(self):
        chart = self.calculator.generate_chart(datetime(2024, 2, 10, 12, 0))
        assert chart.key_points[0] == "当前为阳遁2局"
        assert chart.key_points[1] == "值符为天芮，值使为死门"
        text = format_chart_display(chart)
        assert "阳遁2局" in text
        assert "五宫（中）" in text

    def test_to_dict(self):
        chart = self.calculator.generate_chart(datetime(2024, 2, 10, 12, 0))
        data = chart.to_dict()
        assert data["id"] == f"qimen-{chart.timestamp}"
        assert data["date_time"] == "2024-02-10T12:00:00"
        assert len(data["palaces"]) == 9
        assert data["palaces"][4]["is_center"] is True

    def test_invalid_time(self):
        with pytest.raises(InvalidInput):
            self.calculator.generate_chart("yesterday")
