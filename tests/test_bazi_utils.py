#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
干支历法引擎单元测试
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from lunar_python import Solar

from bazi_utils import (
    GANZHI_CYCLE,
    DayBoundaryRule,
    InvalidInput,
    calculate_luck_info,
    ganzhi_index,
    get_current_solar_term,
    get_day_ganzhi,
    get_four_pillars,
    get_hour_branch_index,
    get_solar_term,
    get_time_slot,
    get_year_ganzhi,
    get_zodiac_animal,
    is_forward_luck,
    is_valid_ganzhi,
    luck_pillar_sequence,
    parse_datetime,
    resolve_day_boundary_rule,
    stem_polarity,
)


class TestSexagenaryCycle:
    """六十甲子测试类"""

    def test_cycle_has_sixty_unique_pairs(self):
        """测试：六十甲子不重复，甲子起癸亥止"""
        assert len(GANZHI_CYCLE) == 60
        assert len(set(GANZHI_CYCLE)) == 60
        assert GANZHI_CYCLE[0] == "甲子"
        assert GANZHI_CYCLE[-1] == "癸亥"

    def test_ganzhi_index_and_validation(self):
        """测试：干支序号与合法性"""
        assert ganzhi_index("甲子") == 0
        assert ganzhi_index("乙丑") == 1
        assert ganzhi_index("癸亥") == 59
        assert is_valid_ganzhi("丙寅")
        # 阳干不配阴支
        assert not is_valid_ganzhi("甲丑")
        assert not is_valid_ganzhi(None)
        with pytest.raises(InvalidInput):
            ganzhi_index("甲丑")

    def test_day_pillar_repeats_every_sixty_days(self):
        """测试：日柱 60 天一循环，相邻两天序号差 1"""
        start = date(2023, 5, 17)
        assert get_day_ganzhi(start) == get_day_ganzhi(start + timedelta(days=60))
        first = ganzhi_index(get_day_ganzhi(start))
        second = ganzhi_index(get_day_ganzhi(start + timedelta(days=1)))
        assert (second - first) % 60 == 1

    def test_day_epoch(self):
        """测试：2000-01-01 为戊午日"""
        assert get_day_ganzhi(date(2000, 1, 1)) == "戊午"


class TestFourPillars:
    """四柱计算测试类"""

    def test_spring_festival_2024_noon(self):
        """测试：2024-02-10 12:00 → 甲辰 丙寅 甲辰 庚午"""
        pillars = get_four_pillars("2024-02-10T12:00")
        assert pillars.as_list() == ["甲辰", "丙寅", "甲辰", "庚午"]
        assert str(pillars) == "甲辰 丙寅 甲辰 庚午"

    def test_late_rat_hour_rules(self):
        """测试：23:30 三种换日规则"""
        moment = datetime(2024, 2, 10, 23, 30)

        # Given: 传统子平 23 点换天
        traditional = get_four_pillars(moment, DayBoundaryRule.TRADITIONAL)
        assert (traditional.day, traditional.hour) == ("乙巳", "丙子")

        # Given: 现代 0 点换天
        modern = get_four_pillars(moment, DayBoundaryRule.MODERN)
        assert (modern.day, modern.hour) == ("甲辰", "甲子")

        # Given: 早晚子，日柱不变、时干按次日
        early_late = get_four_pillars(moment, "earlyLate")
        assert (early_late.day, early_late.hour) == ("甲辰", "丙子")

        # 年柱月柱不受换日规则影响
        assert traditional.year == modern.year == early_late.year == "甲辰"
        assert traditional.month == modern.month == early_late.month == "丙寅"

    def test_rules_agree_outside_hour_23(self):
        """测试：非 23 点三种规则结果一致"""
        moment = datetime(2024, 2, 10, 0, 30)
        results = {str(get_four_pillars(moment, rule)) for rule in DayBoundaryRule}
        assert len(results) == 1

    def test_winter_2025(self):
        """测试：2025-12-11 → 乙巳年 戊子月 甲寅日"""
        pillars = get_four_pillars(datetime(2025, 12, 11, 12, 0))
        assert (pillars.year, pillars.month, pillars.day) == ("乙巳", "戊子", "甲寅")

    def test_year_changes_at_lichun_not_january(self):
        """测试：立春前一分钟仍是上一年，立春后一分钟换年"""
        lichun = get_solar_term(2024, 2)
        assert lichun.month == 2
        assert get_year_ganzhi(lichun - timedelta(minutes=1)) == "癸卯"
        assert get_year_ganzhi(lichun + timedelta(minutes=1)) == "甲辰"
        # 元旦后立春前仍属癸卯年
        assert get_year_ganzhi(datetime(2024, 1, 20, 12, 0)) == "癸卯"

    @pytest.mark.parametrize("moment", [
        datetime(1990, 6, 15, 12, 0),
        datetime(2000, 9, 20, 8, 0),
        datetime(2010, 3, 20, 16, 0),
        datetime(2023, 1, 20, 12, 0),
        datetime(2024, 8, 15, 10, 0),
    ])
    def test_matches_lunar_python_mid_month(self, moment):
        """测试：远离节气的日期与 lunar_python 一致"""
        lunar = Solar.fromYmdHms(
            moment.year, moment.month, moment.day, moment.hour, moment.minute, 0
        ).getLunar()
        pillars = get_four_pillars(moment)
        assert pillars.year == lunar.getYearInGanZhiExact()
        assert pillars.month == lunar.getMonthInGanZhiExact()
        assert pillars.day == lunar.getDayInGanZhi()
        assert pillars.hour == lunar.getTimeInGanZhi()

    def test_resolve_rule_accepts_booleans(self):
        """测试：布尔写法兼容"""
        assert resolve_day_boundary_rule(True) is DayBoundaryRule.TRADITIONAL
        assert resolve_day_boundary_rule(False) is DayBoundaryRule.MODERN
        assert resolve_day_boundary_rule(None) is DayBoundaryRule.MODERN
        with pytest.raises(InvalidInput):
            resolve_day_boundary_rule("sometimes")


class TestSolarTerms:
    """节气计算测试类"""

    def test_terms_strictly_increase(self):
        """测试：同一年内节气时刻严格递增，跨年连续"""
        for year in (1900, 1984, 2024, 2100):
            instants = [get_solar_term(year, i) for i in range(24)]
            assert instants == sorted(instants)
            assert len(set(instants)) == 24
            assert get_solar_term(year, 23) < get_solar_term(year + 1, 0)

    def test_base_instant(self):
        """测试：1900 年小寒为基准时刻"""
        assert get_solar_term(1900, 0) == datetime(1900, 1, 6, 2, 5)

    def test_invalid_index(self):
        with pytest.raises(InvalidInput):
            get_solar_term(2024, 24)

    def test_current_solar_term(self):
        """测试：2024-02-10 处于立春"""
        index, name, instant = get_current_solar_term(datetime(2024, 2, 10, 12, 0))
        assert (index, name) == (2, "立春")
        assert instant == get_solar_term(2024, 2)


class TestParsing:
    """时间解析测试类"""

    def test_accepts_several_forms(self):
        assert parse_datetime("2024-02-10T23:30") == datetime(2024, 2, 10, 23, 30)
        assert parse_datetime("2024-02-10 23:30:00") == datetime(2024, 2, 10, 23, 30)
        assert parse_datetime(date(2024, 2, 10)) == datetime(2024, 2, 10, 12, 0)

    def test_timezone_uses_wall_clock(self):
        """测试：带时区的时间按墙上时间处理"""
        aware = datetime(2024, 2, 10, 23, 30, tzinfo=timezone(timedelta(hours=8)))
        assert parse_datetime(aware) == datetime(2024, 2, 10, 23, 30)
        assert parse_datetime("2024-02-10T23:30:00Z") == datetime(2024, 2, 10, 23, 30)

    @pytest.mark.parametrize("value", ["", "not a date", "0999-01-01T00:00", "3001-01-01", 12345])
    def test_rejects_bad_input(self, value):
        """测试：无法解析或超出范围时报错，不回退到当前时间"""
        with pytest.raises(InvalidInput):
            parse_datetime(value)


class TestHelpers:
    """时辰、生肖、阴阳测试类"""

    def test_hour_branch(self):
        assert get_hour_branch_index(23) == 0
        assert get_hour_branch_index(0) == 0
        assert get_hour_branch_index(1) == 1
        assert get_hour_branch_index(12) == 6
        with pytest.raises(InvalidInput):
            get_hour_branch_index(24)

    def test_time_slot(self):
        slot = get_time_slot(23)
        assert slot["name"] == "子时"
        assert slot["range"] == "23:00-01:00"

    def test_zodiac(self):
        assert get_zodiac_animal(2024) == "龙"
        assert get_zodiac_animal(1900) == "鼠"

    def test_stem_polarity(self):
        assert stem_polarity("甲") == "yang"
        assert stem_polarity("乙") == "yin"
        with pytest.raises(InvalidInput):
            stem_polarity("子")


class TestLuck:
    """大运测试类"""

    def test_direction(self):
        """测试：阳男阴女顺行，阴男阳女逆行"""
        assert is_forward_luck("甲", "男") is True
        assert is_forward_luck("甲", "女") is False
        assert is_forward_luck("乙", "男") is False
        assert is_forward_luck("乙", "女") is True
        with pytest.raises(InvalidInput):
            is_forward_luck("甲", "other")

    def test_sequence_wraps(self):
        assert luck_pillar_sequence("癸亥", True, steps=3) == ["癸亥", "甲子", "乙丑"]
        assert luck_pillar_sequence("甲子", False, steps=3) == ["甲子", "癸亥", "壬戌"]

    def test_yang_year_male_runs_forward(self):
        """测试：甲辰年男命顺行，首步大运为月柱下一位"""
        # Given
        birth = "2024-02-10T12:00"
        # When
        info = calculate_luck_info(birth, "男")
        # Then
        assert info.forward is True
        assert info.pillars.month == "丙寅"
        assert info.first_da_yun == "丁卯"
        assert info.sequence[:3] == ["丁卯", "戊辰", "己巳"]
        assert len(info.sequence) == 10
        assert info.start_age >= 1
        assert info.start_date > date(2024, 2, 10)

    def test_yang_year_female_runs_backward(self):
        info = calculate_luck_info("2024-02-10T12:00", "女")
        assert info.forward is False
        assert info.first_da_yun == "乙丑"
        assert info.direction_label == "逆行"

    def test_yin_year_male_runs_backward(self):
        info = calculate_luck_info("2025-12-11T12:00", "男")
        assert info.pillars.year == "乙巳"
        assert info.forward is False
        assert info.first_da_yun == "丁亥"

    def test_start_age_at_least_one(self):
        """测试：紧挨节气出生时起运岁数仍至少为 1"""
        just_after = get_solar_term(2024, 2) + timedelta(hours=1)
        info = calculate_luck_info(just_after, "女")
        assert info.start_age == 1

    def test_uses_traditional_rule_by_default(self):
        info = calculate_luck_info("2024-02-10T23:30", "男")
        assert info.pillars.day == "乙巳"
        assert info.to_dict()["pillars"]["hour"] == "丙子"
