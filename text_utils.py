"""
Text helpers for model output: tolerant JSON extraction/repair and
plain-text excerpts of streamed markdown.

The JSON repair passes are best-effort heuristics for the malformations
seen in LLM output (full-width punctuation, trailing commas, raw newlines
and stray quotes inside strings, missing commas). They are not a JSON
grammar; every pass is string-literal aware and leaves valid JSON alone.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Optional

from json_repair import repair_json

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r'```(?:json)?\s*([\s\S]*?)```')
_TRAILING_COMMA_RE = re.compile(r',\s*([}\]])')
_ADJACENT_OBJECTS_RE = re.compile(r'}\s*{')
_ADJACENT_ARRAYS_RE = re.compile(r']\s*\[')

_MD_CODE_BLOCK_RE = re.compile(r'```.*?```', re.DOTALL)
_MD_HEADER_RE = re.compile(r'^\s*#{1,6}\s*', re.MULTILINE)
_MD_BOLD_ASTERISK_RE = re.compile(r'\*\*(.+?)\*\*')
_MD_BOLD_UNDERSCORE_RE = re.compile(r'__(.+?)__')
_MD_ITALIC_ASTERISK_RE = re.compile(r'(?<!\w)\*([^*\n]+?)\*(?!\w)')
_MD_BULLET_RE = re.compile(r'^\s*[-*•]\s+', re.MULTILINE)
_MD_BLOCKQUOTE_RE = re.compile(r'^\s*>\s?', re.MULTILINE)
_MD_INLINE_CODE_RE = re.compile(r'`([^`]+)`')
_WHITESPACE_RE = re.compile(r'\s+')

_JSON_WHITESPACE = frozenset(' \t\r\n')
_QUOTE_TERMINATORS = frozenset(',}]:')

RAW_HEAD_CHARS = 800
RAW_TAIL_CHARS = 400


class JsonParseFailure(ValueError):
    """No candidate produced a JSON object of the expected shape."""

    def __init__(self, last_error: str):
        self.last_error = last_error
        super().__init__(f"JSON解析失败：{last_error}")


def _split_string_literals(text: str) -> list:
    """
    Split text into (is_string, chunk) segments.

    String chunks include their quotes; backslash escapes are honored and an
    unterminated string runs to the end of the text.
    """
    segments = []
    start = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                segments.append((True, text[start:i + 1]))
                start = i + 1
                in_string = False
        elif ch == '"':
            if i > start:
                segments.append((False, text[start:i]))
            start = i
            in_string = True
    if start < len(text):
        segments.append((in_string, text[start:]))
    return segments


def _map_outside_strings(text: str, func) -> str:
    return ''.join(chunk if is_string else func(chunk)
                   for is_string, chunk in _split_string_literals(text))


def extract_json_content(raw: str) -> str:
    """Take a fenced ```json block if present, else first '{' to last '}'."""
    content = (raw or '').strip()
    fenced = _FENCED_JSON_RE.search(content)
    if fenced:
        return fenced.group(1).strip()
    start = content.find('{')
    end = content.rfind('}')
    if start != -1 and end > start:
        return content[start:end + 1]
    return content


def normalize_json_punctuation(text: str) -> str:
    """Full-width ， and ： become ASCII outside string literals."""
    return _map_outside_strings(text, lambda s: s.replace('，', ',').replace('：', ':'))


def _clean_structure_chunk(chunk: str) -> str:
    chunk = _TRAILING_COMMA_RE.sub(r'\1', chunk)
    chunk = _ADJACENT_OBJECTS_RE.sub('},{', chunk)
    return _ADJACENT_ARRAYS_RE.sub('],[', chunk)


def clean_json_structure(text: str) -> str:
    """Drop BOMs and trailing commas, separate concatenated objects/arrays."""
    text = text.replace('\ufeff', '')
    return _map_outside_strings(text, _clean_structure_chunk)


def escape_newlines_in_strings(text: str) -> str:
    """Raw CR/LF inside a string literal become \\r / \\n escapes."""
    return ''.join(
        chunk.replace('\r', '\\r').replace('\n', '\\n') if is_string else chunk
        for is_string, chunk in _split_string_literals(text)
    )


def escape_unescaped_quotes_in_strings(text: str) -> str:
    """
    Inside a string, a quote that is not followed (after whitespace) by
    , } ] : or the end of text is taken as a literal and escaped.

    Heuristic: a string value directly followed by another string with no
    comma is still misread as one string.
    """
    out = []
    in_string = False
    escaped = False
    length = len(text)
    for i, ch in enumerate(text):
        if not in_string:
            if ch == '"':
                in_string = True
            out.append(ch)
            continue
        if escaped:
            escaped = False
        elif ch == '\\':
            escaped = True
        elif ch == '"':
            j = i + 1
            while j < length and text[j].isspace():
                j += 1
            if j < length and text[j] not in _QUOTE_TERMINATORS:
                out.append('\\"')
                continue
            in_string = False
        out.append(ch)
    return ''.join(out)


def _is_value_start(ch: str) -> bool:
    return ch in '"{[-tfn' or '0' <= ch <= '9'


def _insert_missing_commas(text: str, container: str) -> str:
    """
    Insert a comma before a new value (arrays) or a new key (objects) that
    directly follows a previous value without one.
    """
    out = []
    stack = []
    in_string = False
    escaped = False
    gap = False
    last = ''
    for ch in text:
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
                last = '"'
                gap = False
            continue

        if ch in _JSON_WHITESPACE:
            out.append(ch)
            gap = True
            continue

        top = stack[-1] if stack else None
        if top == container and last and last not in '[{,:':
            if container == 'array':
                # digits and literals only start a new value after a separator
                needs_comma = ch in '"{[' or (_is_value_start(ch) and (gap or last in '"}]'))
            else:
                needs_comma = ch == '"'
            if needs_comma:
                out.append(',')

        if ch == '"':
            in_string = True
        elif ch == '[':
            stack.append('array')
        elif ch == '{':
            stack.append('object')
        elif ch in ']}' and stack:
            stack.pop()

        out.append(ch)
        last = ch
        gap = False
    return ''.join(out)


def insert_missing_commas_in_arrays(text: str) -> str:
    return _insert_missing_commas(text, 'array')


def insert_missing_commas_in_objects(text: str) -> str:
    return _insert_missing_commas(text, 'object')


def repair_json_text(text: str) -> str:
    """Run every repair pass in order."""
    text = normalize_json_punctuation(text)
    text = clean_json_structure(text)
    text = escape_newlines_in_strings(text)
    text = escape_unescaped_quotes_in_strings(text)
    text = insert_missing_commas_in_arrays(text)
    return insert_missing_commas_in_objects(text)


def safe_library_repair(text: str) -> Optional[str]:
    """Independent candidate from json_repair; None when it gives up."""
    try:
        repaired = repair_json(text)
    except Exception as exc:  # the library is best effort as well
        logger.warning("json_repair failed: %s", exc)
        return None
    if not isinstance(repaired, str) or not repaired.strip():
        return None
    return repaired


def _check_shape(data, required_list_key: Optional[str]) -> Optional[str]:
    if not isinstance(data, dict):
        return "模型返回的数据不是 JSON 对象。"
    if required_list_key is None:
        return None
    value = data.get(required_list_key)
    if not isinstance(value, list) or not value:
        return f"模型返回的数据格式不正确（缺失 {required_list_key}）。"
    return None


def parse_model_json(raw: str, required_list_key: Optional[str] = "chartPoints") -> dict:
    """
    Parse an LLM reply that should contain one JSON object.

    Candidates are tried in order: the extracted text, the repaired text and
    the json_repair output. The first that parses to an object holding a
    non-empty list under ``required_list_key`` wins.

    Raises:
        JsonParseFailure: carrying the last parser or shape error.
    """
    content = extract_json_content(raw)
    candidates = [content, repair_json_text(content), safe_library_repair(content)]

    last_error = "JSON 解析失败"
    for candidate in candidates:
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = str(exc)
            continue
        problem = _check_shape(data, required_list_key)
        if problem:
            last_error = problem
            continue
        return data
    raise JsonParseFailure(last_error)


def raw_text_preview(raw: str) -> tuple:
    """(head, tail) of an offending reply for diagnostics."""
    raw = raw or ''
    return raw[:RAW_HEAD_CHARS], raw[-RAW_TAIL_CHARS:]


def strip_markdown(text: str) -> str:
    """Markdown to a single line of plain text."""
    if not text:
        return ''
    text = _MD_CODE_BLOCK_RE.sub('', text)
    text = _MD_HEADER_RE.sub('', text)
    text = _MD_BOLD_ASTERISK_RE.sub(r'\1', text)
    text = _MD_BOLD_UNDERSCORE_RE.sub(r'\1', text)
    text = _MD_ITALIC_ASTERISK_RE.sub(r'\1', text)
    text = _MD_BULLET_RE.sub('', text)
    text = _MD_BLOCKQUOTE_RE.sub('', text)
    text = _MD_INLINE_CODE_RE.sub(r'\1', text)
    return _WHITESPACE_RE.sub(' ', text).strip()


def summarize_text(text: str, limit: int = 120) -> str:
    """Plain-text excerpt used for history records."""
    plain = strip_markdown(text)
    if len(plain) <= limit:
        return plain
    return plain[:limit].rstrip() + '…'
