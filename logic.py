"""
占卜核心逻辑 - 大师人设、提示词构建、流式解读、人生K线分析
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Iterator, Optional

from lunar_python import Solar

from bazi_utils import (
    DayBoundaryRule,
    InvalidInput,
    calculate_luck_info,
    get_four_pillars,
    get_time_slot,
    is_forward_luck,
    is_valid_ganzhi,
    parse_datetime,
    stem_polarity,
)
from llm_client import ProviderConfig, complete_json, stream_chat
from qimen_utils import QiMenChart, format_chart_display
from text_utils import JsonParseFailure, parse_model_json, raw_text_preview
from zhouyi_utils import HexagramCast, ZhouyiCalculator

logger = logging.getLogger(__name__)


class UnsafeInput(InvalidInput):
    """疑似提示词注入的输入"""

    def __init__(self, message: str = "🔮 天机不可泄露，请勿试探。请提出与占卜相关的正当问题。"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# 大师人设
# ---------------------------------------------------------------------------

DEFAULT_MASTER_ID = "zhouwenwang"

MASTERS = [
    {
        "id": "zhouwenwang",
        "name": "周文王",
        "description": "周朝奠基人，精通易经，开创八卦理论，被誉为易学之祖",
        "prompt": (
            "你是周文王，古代圣贤，精通易经占卜。你深谙八卦变化之理，能够通过卦象洞察天机，"
            "解读人生吉凶。在回答时要体现你的深厚易学功底，语言古朴典雅，充满智慧。"
            "请根据提供的占卜信息，给出详细而准确的解读，包含具体的指导建议。"
        ),
    },
    {
        "id": "guiguzi",
        "name": "鬼谷子",
        "description": "纵横家之祖，通晓兵法术数，善于审时度势",
        "prompt": (
            "你是鬼谷子，隐居云梦山的纵横家宗师，通晓奇门遁甲与兵法谋略。"
            "你看问题讲究形势与时机，言辞简练而锋利，善于指出局中的进退之道。"
            "请根据提供的盘面信息，分析当下形势，给出可执行的策略建议。"
        ),
    },
    {
        "id": "zhougong",
        "name": "周公",
        "description": "周朝贤相，相传善解梦境，留有《周公解梦》",
        "prompt": (
            "你是周公旦，辅佐成王的贤相，相传精于解梦。你温和而睿智，"
            "善于从梦境的意象中看见人心所系。请结合传统梦象与现代心理，"
            "为来访者解读梦境，并给出温暖的生活建议。"
        ),
    },
    {
        "id": "shaoyong",
        "name": "邵雍",
        "description": "北宋理学家，著《皇极经世》，精于象数推演",
        "prompt": (
            "你是邵康节先生，北宋象数易学大家。你推演讲究数理与时运，"
            "说理清楚、层次分明。请根据提供的八字与时运信息，推断人生起伏，"
            "并说明每个判断背后的依据。"
        ),
    },
]
_MASTERS_BY_ID = {m["id"]: m for m in MASTERS}


def get_master(master_id: Optional[str] = None) -> dict:
    """按 id 取大师，未知或为空时返回周文王。"""
    return _MASTERS_BY_ID.get(master_id or DEFAULT_MASTER_ID, _MASTERS_BY_ID[DEFAULT_MASTER_ID])


# ---------------------------------------------------------------------------
# 提示词
# ---------------------------------------------------------------------------

SYSTEM_INSTRUCTION = """
# Voice & Tone (语气)
* 始终以你所扮演的大师身份说话，**严禁**提及自己是 AI、模型或程序。
* 不要开场白，不要复述用户的问题，**直接**从卦象/盘面给出的意象切入。
* 把专业术语翻译成日常语言：先讲结论，再讲依据。

# Structure (结构)
* 使用 Markdown 小标题分段，段落以叙述为主，少用列表。
* 结尾给出 2-3 条具体、可执行的建议。

# Safety First
* 严禁预测寿元（死亡时间）、严禁做医疗诊断、严禁提供彩票号码或诱导赌博。
* 不下绝对宿命的判词，用"需要留意""宜""忌"代替"注定"。
"""

GAME_TYPES = {
    "liuyao": "六爻占卜",
    "qimen": "奇门遁甲",
    "zhougong": "周公解梦",
    "lifekline": "人生K线",
}

GAME_PROMPTS = {
    "liuyao": """请根据以下六爻卦象为求测者解卦。

【求测问题】{question}
【起卦时间】{time_text}（{lunar_text}）
【起卦四柱】{pillars}

{hexagram_text}

请按以下结构输出：
## 1. 卦象总断
（本卦与变卦的整体含义，对所问之事是吉是凶。）
## 2. 动爻与世应
（动爻带来的变化，世爻代表求测者、应爻代表对方或所求之事，二者关系如何。）
## 3. 指点迷津
（具体建议，何时宜动、何时宜守。）
""",
    "qimen": """请根据以下奇门遁甲时盘为求测者断事。

【求测问题】{question}
【起局时间】{time_text}（{lunar_text}）

{chart_text}

请按以下结构输出：
## 1. 局势总览
（阴阳遁与局数反映的整体气场，值符值使落宫的含义。）
## 2. 用神分析
（结合所问之事选取用神宫位，分析门、星、神的吉凶组合。）
## 3. 行动方位与时机
（吉门所在方位、适合行动的时机与需要回避的方向。）
""",
    "zhougong": """请为求测者解读以下梦境。

【梦境描述】{dream}
【求测者关心】{question}
【做梦/询问时间】{time_text}（{lunar_text}）

请按以下结构输出：
## 1. 梦象解析
（梦中关键意象在传统解梦中的含义。）
## 2. 心境映照
（这个梦反映出的近期心理状态与牵挂。）
## 3. 吉凶与建议
（梦兆吉凶，以及近期生活中可以做的调整。）
""",
}

# Model-specific optimal temperature settings
MODEL_TEMPERATURES = {
    "gemini-2.0-flash": 0.8,
    "gemini-2.0-flash-exp": 0.8,
    "gemini-1.5-pro": 0.7,
    "gemini-1.5-flash": 0.8,
    "gpt-4o": 0.7,
    "gpt-4o-mini": 0.7,
    "gpt-4-turbo": 0.7,
    "deepseek-chat": 0.7,
}

LIFE_KLINE_TEMPERATURE = 0.7

# 服务器端拦截的提示词注入特征
INJECTION_BLOCKLIST = (
    "system instruction", "system prompt", "ignore all instructions",
    "repeat the text above", "your prompt", "ignore previous",
    "disregard all", "forget everything", "override", "bypass",
    "系统指令", "提示词", "你的设定", "忽略之前的", "重复上面的",
    "忽略以上", "无视规则", "跳过限制", "绕过", "告诉我你的",
    "输出你的", "显示你的", "打印你的",
)


def get_optimal_temperature(model: str) -> float:
    """Get the optimal temperature for a given model."""
    return MODEL_TEMPERATURES.get(model, 0.7)


def is_safe_input(user_text: str) -> bool:
    """
    检查用户输入是否安全，防止 Prompt 注入攻击。
    在发送给 LLM API 之前进行服务器端拦截。
    """
    lowered = (user_text or "").lower()
    return not any(word in lowered for word in INJECTION_BLOCKLIST)


def validate_question(text: Optional[str], empty_message: str = "请输入您要占卜的问题") -> str:
    """问题不能为空，也不能包含注入特征。"""
    cleaned = (text or "").strip()
    if not cleaned:
        raise InvalidInput(empty_message)
    if not is_safe_input(cleaned):
        raise UnsafeInput()
    return cleaned


def format_lunar_date(dt: datetime) -> str:
    """农历日期文本，如 甲辰年正月初一"""
    lunar = Solar.fromYmdHms(dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second).getLunar()
    return f"{lunar.getYearInGanZhi()}年{lunar.getMonthInChinese()}月{lunar.getDayInChinese()}"


def _time_context(moment=None) -> dict:
    moment = parse_datetime(moment) if moment else datetime.now().replace(microsecond=0)
    slot = get_time_slot(moment.hour)
    return {
        "moment": moment,
        "time_text": f"{moment.year}年{moment.month}月{moment.day}日 {moment:%H:%M}（{slot['name']}）",
        "lunar_text": format_lunar_date(moment),
    }


def build_divination_prompt(game_type: str, data: dict) -> str:
    """
    构建各玩法的用户提示词。

    data 约定：
        liuyao   {"question", "cast": HexagramCast}
        qimen    {"question", "chart": QiMenChart}
        zhougong {"dream", "question"(可选), "time"(可选)}
    """
    if game_type == "liuyao":
        cast = data.get("cast")
        if not isinstance(cast, HexagramCast):
            raise InvalidInput("缺少卦象数据，请先起卦")
        question = validate_question(data.get("question"))
        ctx = _time_context(cast.cast_time or data.get("time"))
        pillars = get_four_pillars(ctx["moment"])
        return GAME_PROMPTS["liuyao"].format(
            question=question,
            time_text=ctx["time_text"],
            lunar_text=ctx["lunar_text"],
            pillars=f"{pillars.year}年 {pillars.month}月 {pillars.day}日 {pillars.hour}时",
            hexagram_text=ZhouyiCalculator().format_hexagram_display(cast),
        )

    if game_type == "qimen":
        chart = data.get("chart")
        if not isinstance(chart, QiMenChart):
            raise InvalidInput("缺少奇门盘数据，请先排盘")
        question = validate_question(data.get("question"))
        ctx = _time_context(chart.date_time)
        return GAME_PROMPTS["qimen"].format(
            question=question,
            time_text=ctx["time_text"],
            lunar_text=ctx["lunar_text"],
            chart_text=format_chart_display(chart),
        )

    if game_type == "zhougong":
        dream = validate_question(data.get("dream"), empty_message="请输入您的梦境内容")
        question = (data.get("question") or "").strip()
        if question and not is_safe_input(question):
            raise UnsafeInput()
        ctx = _time_context(data.get("time"))
        return GAME_PROMPTS["zhougong"].format(
            dream=dream,
            question=question or "梦境吉凶与寓意",
            time_text=ctx["time_text"],
            lunar_text=ctx["lunar_text"],
        )

    raise InvalidInput(f"不支持的占卜类型：{game_type}")


def build_messages(game_type: str, data: dict, master_id: Optional[str] = None) -> list:
    master = get_master(master_id)
    return [
        {"role": "system", "content": master["prompt"] + "\n" + SYSTEM_INSTRUCTION},
        {"role": "user", "content": build_divination_prompt(game_type, data)},
    ]


def get_divination_analysis(
    game_type: str,
    data: dict,
    config: ProviderConfig,
    master_id: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    client=None,
) -> Iterator[str]:
    """
    Stream the master's interpretation for a liuyao / qimen / zhougong reading.

    Input is validated before any request is made; the stream honours
    ``cancel_event`` (see llm_client.stream_chat).
    """
    messages = build_messages(game_type, data, master_id)
    temperature = get_optimal_temperature(config.model)
    logger.info("Divination analysis game=%s master=%s model=%s", game_type, master_id, config.model)
    yield from stream_chat(messages, config, temperature=temperature,
                           cancel_event=cancel_event, client=client)


# ---------------------------------------------------------------------------
# 人生K线
# ---------------------------------------------------------------------------

LIFE_KLINE_REQUIRED_FIELDS = (
    "birthTime", "yearPillar", "monthPillar", "dayPillar", "hourPillar", "startAge", "firstDaYun",
)
_PILLAR_LABELS = (("yearPillar", "年柱"), ("monthPillar", "月柱"), ("dayPillar", "日柱"), ("hourPillar", "时柱"))

LIFE_KLINE_SYSTEM_INSTRUCTION = """
你是一位精通子平八字与大运流年推演的命理师。你将收到已经排好的八字四柱与大运参数，
请推演求测者 1-100 岁（虚岁）的人生运势，并**只输出一个 JSON 对象**，不要输出任何其他文字。

JSON 字段：
- bazi: 四柱数组，如 ["甲子", "丙寅", "戊辰", "庚申"]
- chartPoints: 数组，每个虚岁一条，字段为
  age(整数), year(公历年), ganZhi(流年干支), daYun(当年大运，起运前为"童限"),
  open, close, high, low(0-100 的运势K线数值), score(0-10), reason(20-30字流年详批)
- summary / personality / industry / fengShui / wealth / marriage / health / family / crypto: 文字分析
- summaryScore / personalityScore / industryScore / fengShuiScore / wealthScore /
  marriageScore / healthScore / familyScore / cryptoScore: 0-10 分
- cryptoYear: 最适合投机的年份, cryptoStyle: 适合的投资风格
"""

# 分析字段缺失时使用的占位文本，不做任何猜测
ANALYSIS_PLACEHOLDERS = {
    "summary": "无摘要",
    "personality": "无性格分析",
    "industry": "无",
    "fengShui": "建议多亲近自然。",
    "wealth": "无",
    "marriage": "无",
    "health": "无",
    "family": "无",
    "crypto": "暂无分析",
}
TEXT_PLACEHOLDERS = {
    "cryptoYear": "待定",
    "cryptoStyle": "未知",
}
DEFAULT_SCORE = 5


def validate_life_kline_input(payload: dict) -> dict:
    """校验人生K线参数，返回去除首尾空白后的副本。"""
    for key in LIFE_KLINE_REQUIRED_FIELDS:
        value = payload.get(key)
        if value is None or not str(value).strip():
            raise InvalidInput(f"缺少必要参数：{key}")

    cleaned = dict(payload)
    for key, label in _PILLAR_LABELS:
        pillar = str(payload[key]).strip()
        if not is_valid_ganzhi(pillar):
            raise InvalidInput(f"{label}格式不正确：{pillar}")
        cleaned[key] = pillar

    first = str(payload["firstDaYun"]).strip()
    if not is_valid_ganzhi(first):
        raise InvalidInput(f"首步大运格式不正确：{first}")
    cleaned["firstDaYun"] = first

    try:
        start_age = float(payload["startAge"])
    except (TypeError, ValueError):
        raise InvalidInput(f"起运年龄不合理：{payload['startAge']}") from None
    if not 1 <= start_age <= 20:
        raise InvalidInput(f"起运年龄不合理：{payload['startAge']}")
    cleaned["startAge"] = int(start_age)

    gender = payload.get("gender", "男")
    if gender not in ("男", "女"):
        raise InvalidInput(f"性别必须是 男 或 女：{gender}")
    cleaned["gender"] = gender
    return cleaned


def build_life_kline_input(birth_time, gender: str, name: str = "") -> dict:
    """由出生时间和性别排出四柱与大运参数（传统子平：23 点后换日）。"""
    birth = parse_datetime(birth_time)
    luck = calculate_luck_info(birth, gender, DayBoundaryRule.TRADITIONAL)
    return {
        "birthTime": birth.strftime("%Y-%m-%dT%H:%M"),
        "name": name,
        "gender": gender,
        "yearPillar": luck.pillars.year,
        "monthPillar": luck.pillars.month,
        "dayPillar": luck.pillars.day,
        "hourPillar": luck.pillars.hour,
        "startAge": luck.start_age,
        "firstDaYun": luck.first_da_yun,
        "luckStartDate": luck.start_date.isoformat(),
        "daYunSequence": luck.sequence,
    }


def build_life_kline_prompt(payload: dict, request_id: Optional[int] = None) -> str:
    """人生K线用户提示词，payload 需已通过 validate_life_kline_input。"""
    gender = payload["gender"]
    gender_text = "男 (乾造)" if gender == "男" else "女 (坤造)"
    year_stem = payload["yearPillar"][0]
    forward = is_forward_luck(year_stem, gender)
    polarity = "阳" if stem_polarity(year_stem) == "yang" else "阴"
    direction = "顺行 (Forward)" if forward else "逆行 (Backward)"
    example = (
        "例如：第一步是【戊申】，第二步则是【己酉】（顺排）" if forward
        else "例如：第一步是【戊申】，第二步则是【丁未】（逆排）"
    )
    start_age = int(payload["startAge"])
    try:
        birth_year = parse_datetime(payload["birthTime"]).year
    except InvalidInput:
        birth_year = payload.get("birthYear", "未知")
    request_id = request_id or int(time.time() * 1000)

    return f"""【采取传统子平：23点后即进入第二天】
请根据以下**已经排好的**八字四柱和**指定的大运信息**进行分析。

【基本信息】
性别：{gender_text}
姓名：{payload.get("name") or "未提供"}
出生日期时间：{payload["birthTime"]} (阳历)
出生年份：{birth_year}年 (阳历)
请求编号：{request_id}

【八字四柱】
年柱：{payload["yearPillar"]} (天干属性：{polarity})
月柱：{payload["monthPillar"]}
日柱：{payload["dayPillar"]}
时柱：{payload["hourPillar"]}

【大运核心参数】
1. 起运年龄：{start_age} 岁 (虚岁)。
2. 第一步大运：{payload["firstDaYun"]}。
3. **排序方向**：{direction}。

【必须执行的算法 - 大运序列生成】
1. **锁定第一步**：确认【{payload["firstDaYun"]}】为第一步大运。
2. **计算序列**：根据六十甲子顺序和方向（{direction}），推算出接下来的 9 步大运。
   {example}
3. **填充 JSON**：
   - Age 1 到 {start_age - 1}: daYun = "童限"
   - Age {start_age} 到 {start_age + 9}: daYun = [第1步大运: {payload["firstDaYun"]}]
   - ...以此类推直到 100 岁。

任务：
1. 确认格局与喜忌。
2. 生成 **1-100 岁 (虚岁)** 的人生流年K线数据。
3. 在 `reason` 字段中提供流年详批 (20-30字)。
4. 生成带评分的命理分析报告。

请严格按照系统指令生成 JSON 数据。
"""


def _to_number(value, default):
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return int(number) if number.is_integer() else number


def _score(value):
    number = _to_number(value, DEFAULT_SCORE)
    return number or DEFAULT_SCORE


def normalize_life_kline_result(data: dict) -> dict:
    """
    把模型 JSON 规整为固定结构：数值字段转成数字，缺失的分析文本用占位文本，
    缺失的评分记为 5 分。
    """
    chart_data = []
    for index, point in enumerate(data["chartPoints"]):
        point = point if isinstance(point, dict) else {}
        da_yun = point.get("daYun")
        chart_data.append({
            "age": _to_number(point.get("age"), index + 1),
            "year": _to_number(point.get("year"), 0),
            "ganZhi": str(point.get("ganZhi") or ""),
            "daYun": str(da_yun) if da_yun else None,
            "open": _to_number(point.get("open"), 0),
            "close": _to_number(point.get("close"), 0),
            "high": _to_number(point.get("high"), 0),
            "low": _to_number(point.get("low"), 0),
            "score": _to_number(point.get("score"), 0),
            "reason": str(point.get("reason") or ""),
        })

    bazi = data.get("bazi")
    analysis = {"bazi": [str(item) for item in bazi] if isinstance(bazi, list) else []}
    for key, placeholder in ANALYSIS_PLACEHOLDERS.items():
        value = data.get(key)
        analysis[key] = str(value) if value else placeholder
        analysis[f"{key}Score"] = _score(data.get(f"{key}Score"))
    for key, placeholder in TEXT_PLACEHOLDERS.items():
        value = data.get(key)
        analysis[key] = str(value) if value else placeholder

    return {"chartData": chart_data, "analysis": analysis}


def generate_life_analysis(
    payload: dict,
    config: ProviderConfig,
    cancel_event: Optional[threading.Event] = None,
    client=None,
) -> dict:
    """
    人生K线：校验 → 提示词 → JSON 模式调用 → 容错解析 → 规整。

    Raises:
        InvalidInput: 参数不合法（不会发出请求）
        JsonParseFailure: 模型输出无法解析，原文首尾已记录日志
    """
    cleaned = validate_life_kline_input(payload)
    messages = [
        {"role": "system", "content": LIFE_KLINE_SYSTEM_INSTRUCTION},
        {"role": "user", "content": build_life_kline_prompt(cleaned)},
    ]
    logger.info("Life K-line analysis model=%s", config.model)
    content = complete_json(messages, config, temperature=LIFE_KLINE_TEMPERATURE,
                            cancel_event=cancel_event, client=client)
    try:
        data = parse_model_json(content, required_list_key="chartPoints")
    except JsonParseFailure as exc:
        head, tail = raw_text_preview(content)
        logger.error("Life K-line parse failed: %s", exc)
        logger.error("Life K-line raw content (head): %s", head)
        logger.error("Life K-line raw content (tail): %s", tail)
        raise
    return normalize_life_kline_result(data)
