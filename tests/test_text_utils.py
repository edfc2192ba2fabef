#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
模型输出 JSON 容错解析单元测试
"""

import json

import pytest

from text_utils import (
    JsonParseFailure,
    clean_json_structure,
    escape_newlines_in_strings,
    escape_unescaped_quotes_in_strings,
    extract_json_content,
    insert_missing_commas_in_arrays,
    insert_missing_commas_in_objects,
    normalize_json_punctuation,
    parse_model_json,
    raw_text_preview,
    repair_json_text,
    strip_markdown,
    summarize_text,
)


class TestExtraction:
    """JSON 片段提取测试类"""

    def test_fenced_block_followed_by_prose(self):
        """测试：```json 代码块后面跟着说明文字"""
        raw = '好的，结果如下：\n```json\n{"chartPoints": [{"age": 1}]}\n```\n以上仅供参考。'
        assert extract_json_content(raw) == '{"chartPoints": [{"age": 1}]}'

    def test_outermost_braces(self):
        raw = '前言 {"a": {"b": 1}} 后记'
        assert extract_json_content(raw) == '{"a": {"b": 1}}'

    def test_no_json(self):
        assert extract_json_content("  纯文本  ") == "纯文本"
        assert extract_json_content(None) == ""


class TestRepairPasses:
    """各修复步骤测试类"""

    def test_full_width_punctuation_outside_strings_only(self):
        text = '{"reason"："好，很好"，"age"：1}'
        assert normalize_json_punctuation(text) == '{"reason":"好，很好","age":1}'

    def test_trailing_commas_and_adjacent_objects(self):
        assert clean_json_structure('[{"a": 1} {"a": 2},]') == '[{"a": 1},{"a": 2}]'
        # 字符串里的逗号不动
        assert clean_json_structure('{"s": "x,]"}') == '{"s": "x,]"}'

    def test_bom_removed(self):
        assert clean_json_structure('\ufeff{"a": 1}') == '{"a": 1}'

    def test_raw_newlines_escaped(self):
        text = '{"reason": "第一行\n第二行"}'
        repaired = escape_newlines_in_strings(text)
        assert json.loads(repaired) == {"reason": "第一行\n第二行"}

    def test_newlines_between_tokens_untouched(self):
        text = '{\n  "a": 1\n}'
        assert escape_newlines_in_strings(text) == text

    def test_stray_quotes_escaped(self):
        text = '{"reason": "他说"好"的"}'
        repaired = escape_unescaped_quotes_in_strings(text)
        assert json.loads(repaired) == {"reason": '他说"好"的'}

    def test_missing_commas_in_arrays(self):
        assert json.loads(insert_missing_commas_in_arrays('[1 2 "x" true]')) == [1, 2, "x", True]
        # 多位数字不能被拆开
        assert insert_missing_commas_in_arrays('[12, 345]') == '[12, 345]'

    def test_missing_commas_in_objects(self):
        repaired = insert_missing_commas_in_objects('{"age":1,"score":5 "reason":"好"}')
        assert json.loads(repaired) == {"age": 1, "score": 5, "reason": "好"}

    def test_valid_json_is_left_alone(self):
        """测试：合法 JSON 经过全部修复步骤保持不变"""
        text = '{"a": [1, 2, 10.5, -3], "b": {"c": "x, y: z"}, "d": [true, false, null], "e": ""}'
        assert repair_json_text(text) == text

    def test_repair_is_idempotent(self):
        broken = '{"chartPoints"：[{"age"：1 "reason"："好"}，]}'
        once = repair_json_text(broken)
        assert repair_json_text(once) == once


class TestParseModelJson:
    """parse_model_json 测试类"""

    def test_missing_comma_without_required_key(self):
        data = parse_model_json('{"age":1,"score":5 "reason":"好"}', required_list_key=None)
        assert data["reason"] == "好"
        assert data["score"] == 5

    def test_messy_reply(self):
        """测试：代码块 + 全角标点 + 尾逗号 + 裸换行"""
        # Given
        raw = (
            "```json\n"
            '{"chartPoints"：[\n'
            '  {"age"：1，"reason"："童年\n平顺"}，\n'
            '  {"age"：2，"reason"："多病"}，\n'
            "]，\n"
            '"summary"："一生平稳"}\n'
            "```\n"
            "以上为推演结果。"
        )
        # When
        data = parse_model_json(raw)
        # Then
        assert [p["age"] for p in data["chartPoints"]] == [1, 2]
        assert data["chartPoints"][0]["reason"] == "童年\n平顺"
        assert data["summary"] == "一生平稳"

    def test_single_quotes_recovered_by_library(self):
        data = parse_model_json("{'chartPoints': [{'age': 1}]}")
        assert data["chartPoints"] == [{"age": 1}]

    def test_unparseable_raises(self):
        with pytest.raises(JsonParseFailure) as exc_info:
            parse_model_json("这不是 JSON")
        assert str(exc_info.value).startswith("JSON解析失败：")

    def test_empty_required_list_raises(self):
        with pytest.raises(JsonParseFailure) as exc_info:
            parse_model_json('{"chartPoints": []}')
        assert "chartPoints" in exc_info.value.last_error

    def test_array_top_level_rejected(self):
        with pytest.raises(JsonParseFailure):
            parse_model_json("[1, 2, 3]", required_list_key=None)


class TestTextHelpers:
    """纯文本辅助函数测试类"""

    def test_raw_text_preview(self):
        raw = "a" * 800 + "b" * 1000 + "c" * 400
        head, tail = raw_text_preview(raw)
        assert head == "a" * 800
        assert tail == "c" * 400

    def test_strip_markdown(self):
        text = "## 卦象总断\n\n**大吉**，`利见大人`。\n- 宜守\n> 引文"
        assert strip_markdown(text) == "卦象总断 大吉，利见大人。 宜守 引文"

    def test_summarize_text(self):
        assert summarize_text("**短**") == "短"
        summary = summarize_text("字" * 200, limit=10)
        assert summary == "字" * 10 + "…"
