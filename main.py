"""
FastAPI Backend for the divination service

提供排盘（四柱、大运、六爻、奇门）与大师流式解读的 RESTful API。
"""
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from bazi_utils import (
    InvalidInput,
    calculate_luck_info,
    get_current_solar_term,
    get_four_pillars,
    get_solar_year,
    get_time_slot,
    get_zodiac_animal,
    parse_datetime,
)
from llm_client import (
    AnalysisCancelled,
    InvalidApiKey,
    LLMError,
    MissingApiKey,
    NetworkError,
    ProviderError,
    UnknownProvider,
    resolve_provider_config,
)
from logic import (
    GAME_TYPES,
    MASTERS,
    build_life_kline_input,
    build_messages,
    generate_life_analysis,
    get_divination_analysis,
)
from qimen_utils import QiMenCalculator
from session_store import AppStore, run_analysis, to_plain
from text_utils import JsonParseFailure
from zhouyi_utils import ZhouyiCalculator

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STREAMING_GAMES = ("liuyao", "qimen", "zhougong")

Rule = Literal["modern", "traditional", "earlyLate"]


# --- Pydantic Models for Request/Response ---

class PillarsRequest(BaseModel):
    """Civil time to convert into four pillars."""
    date_time: str = Field(..., description="ISO-8601 local time, e.g. 2024-02-10T23:30")
    rule: Rule = Field("modern", description="子时换日规则 modern/traditional/earlyLate")


class PillarsResponse(BaseModel):
    year: str
    month: str
    day: str
    hour: str
    rule: str
    time_slot: str = Field(..., description="时辰，如 子时")
    time_range: str
    zodiac: str = Field(..., description="生肖（立春换年）")
    solar_term: str = Field(..., description="当前节气")


class LuckRequest(BaseModel):
    date_time: str = Field(..., description="Birth time, ISO-8601")
    gender: str = Field(..., pattern="^(男|女)$", description="Gender (男/女)")


class LuckResponse(BaseModel):
    pillars: dict
    gender: str
    forward: bool
    direction: str
    start_age: int
    start_date: str
    first_da_yun: str
    sequence: List[str]


class HexagramRequest(BaseModel):
    mode: Literal["random", "time"] = Field("random", description="random 金钱课 / time 时间起卦")
    date_time: Optional[str] = Field(None, description="Seed time for mode=time; defaults to now")
    lines: Optional[List[int]] = Field(None, description="Six line values 6/7/8/9, bottom to top")
    question: Optional[str] = None


class QiMenRequest(BaseModel):
    date_time: Optional[str] = Field(None, description="Chart time; defaults to now")
    rule: Rule = "modern"
    question: Optional[str] = None


class ProviderOptions(BaseModel):
    api_key: Optional[str] = Field(None, description="User key, takes priority over the server key")
    provider: Optional[str] = Field(None, description="gemini / openai")
    model: Optional[str] = None


class AnalysisRequest(ProviderOptions):
    question: Optional[str] = None
    dream: Optional[str] = Field(None, description="梦境描述 (zhougong)")
    master_id: Optional[str] = None


class LifeKlineRequest(ProviderOptions):
    birth_time: str = Field(..., description="Birth time, ISO-8601")
    gender: str = Field(..., pattern="^(男|女)$")
    name: Optional[str] = ""


class MasterSelection(BaseModel):
    master_id: str


# --- FastAPI App Initialization ---

app = FastAPI(
    title="周文王占卜 API",
    description="干支排盘、六爻起卦、奇门排盘、人生K线与大师解读",
    version="0.7.0",
)
app.state.store = AppStore()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Helper Functions ---

def get_store(request: Request) -> AppStore:
    """The store lives on app.state; tests override this dependency."""
    return request.app.state.store


def http_error(exc: Exception) -> HTTPException:
    """Translate domain errors into HTTP responses."""
    if isinstance(exc, (InvalidInput, MissingApiKey, InvalidApiKey, UnknownProvider)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NetworkError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProviderError):
        return HTTPException(status_code=502, detail=exc.message)
    if isinstance(exc, JsonParseFailure):
        return HTTPException(status_code=502, detail="结果格式异常，请重试")
    logger.exception("Unexpected error", exc_info=exc)
    return HTTPException(status_code=500, detail="服务内部错误")


def provider_config(options: ProviderOptions, store: AppStore):
    settings = store.settings
    return resolve_provider_config(
        provider=options.provider or settings.provider,
        api_key=options.api_key or settings.api_key,
        model=options.model or settings.model or None,
    )


def require_game(game_id: str) -> str:
    """404 for ids outside GAME_TYPES."""
    if game_id not in GAME_TYPES:
        raise HTTPException(status_code=404, detail=f"不支持的占卜类型：{game_id}")
    return game_id


# --- API Endpoints ---

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "周文王占卜 API is running"}


@app.get("/api/masters")
async def list_masters(store: AppStore = Depends(get_store)):
    masters = [{k: m[k] for k in ("id", "name", "description")} for m in MASTERS]
    selected = store.ensure_master(m["id"] for m in MASTERS)
    return {"masters": masters, "selected": selected}


@app.put("/api/masters/selected")
async def select_master(body: MasterSelection, store: AppStore = Depends(get_store)):
    if body.master_id not in {m["id"] for m in MASTERS}:
        raise HTTPException(status_code=404, detail=f"未知的大师：{body.master_id}")
    store.select_master(body.master_id)
    return {"selected": store.selected_master}


@app.post("/api/pillars", response_model=PillarsResponse)
def four_pillars(body: PillarsRequest):
    """Four pillars for a civil time under the chosen day-boundary rule."""
    try:
        dt = parse_datetime(body.date_time)
        pillars = get_four_pillars(dt, body.rule)
        slot = get_time_slot(dt.hour)
        _, term_name, _ = get_current_solar_term(dt)
    except InvalidInput as exc:
        raise http_error(exc) from exc
    return PillarsResponse(
        **pillars.to_dict(),
        rule=body.rule,
        time_slot=slot["name"],
        time_range=slot["range"],
        zodiac=get_zodiac_animal(get_solar_year(dt)),
        solar_term=term_name,
    )


@app.post("/api/luck", response_model=LuckResponse)
def luck_pillars(body: LuckRequest):
    """大运起运参数（传统子平排四柱）"""
    try:
        info = calculate_luck_info(body.date_time, body.gender)
    except InvalidInput as exc:
        raise http_error(exc) from exc
    return LuckResponse(**info.to_dict())


@app.post("/api/hexagram")
def cast_hexagram(body: HexagramRequest, store: AppStore = Depends(get_store)):
    """六爻起卦，结果保存到 liuyao 会话，供后续解读使用。"""
    calculator = ZhouyiCalculator()
    try:
        if body.lines is not None:
            at = parse_datetime(body.date_time) if body.date_time else None
            cast = calculator.cast_from_lines(body.lines, cast_time=at)
        elif body.mode == "time":
            at = parse_datetime(body.date_time) if body.date_time else None
            cast = calculator.cast_hexagram(at or datetime.now().replace(microsecond=0))
        else:
            cast = calculator.cast_hexagram()
    except InvalidInput as exc:
        raise http_error(exc) from exc

    store.reset_session("liuyao")
    store.set_session_data("liuyao", {"question": body.question, "cast": cast})
    result = cast.to_dict()
    result["display"] = calculator.format_hexagram_display(cast)
    return result


@app.post("/api/qimen")
def qimen_chart(body: QiMenRequest, store: AppStore = Depends(get_store)):
    """奇门时盘，结果保存到 qimen 会话。"""
    try:
        chart = QiMenCalculator().generate_chart(body.date_time, body.rule)
    except InvalidInput as exc:
        raise http_error(exc) from exc
    store.reset_session("qimen")
    store.set_session_data("qimen", {"question": body.question, "chart": chart})
    return chart.to_dict()


@app.post("/api/analysis/{game_id}")
def start_analysis(game_id: str, body: AnalysisRequest, store: AppStore = Depends(get_store)):
    """
    Stream the master's reading for a game as text/plain.

    Any analysis already running for the same game is cancelled first.
    Validation and provider errors that happen before the first chunk are
    returned as HTTP errors; later failures end the stream with a notice
    and are recorded on the session.
    """
    if game_id not in STREAMING_GAMES:
        raise HTTPException(status_code=404, detail=f"不支持的占卜类型：{game_id}")

    session = store.get_session(game_id)
    data = dict(session.data) if isinstance(session.data, dict) else {}
    if body.question is not None:
        data["question"] = body.question
    if body.dream is not None:
        data["dream"] = body.dream
    master_id = body.master_id or store.selected_master

    try:
        build_messages(game_id, data, master_id)
        config = provider_config(body, store)
    except (InvalidInput, LLMError) as exc:
        raise http_error(exc) from exc

    history_entry = {
        "game": GAME_TYPES[game_id],
        "question": data.get("question") or data.get("dream"),
        "master": master_id,
    }
    stream = run_analysis(
        store,
        game_id,
        lambda cancel_event: get_divination_analysis(
            game_id, data, config, master_id=master_id, cancel_event=cancel_event
        ),
        data=data,
        history_entry=history_entry,
    )

    try:
        first_chunk = next(stream, "")
    except (InvalidInput, LLMError) as exc:
        raise http_error(exc) from exc

    def body_iter():
        if first_chunk:
            yield first_chunk
        try:
            yield from stream
        except LLMError as exc:
            logger.warning("Analysis stream for %s ended with error: %s", game_id, exc)
            yield f"\n\n⚠️ {exc}"

    return StreamingResponse(body_iter(), media_type="text/plain; charset=utf-8")


@app.post("/api/analysis/{game_id}/stop")
def stop_analysis(game_id: str, store: AppStore = Depends(get_store)):
    require_game(game_id)
    stopped = store.stop_session(game_id)
    return {"stopped": stopped, "session": store.get_session(game_id).to_dict()}


@app.get("/api/analysis/{game_id}")
def get_analysis(game_id: str, store: AppStore = Depends(get_store)):
    require_game(game_id)
    return store.get_session(game_id).to_dict()


@app.delete("/api/analysis/{game_id}")
def reset_analysis(game_id: str, store: AppStore = Depends(get_store)):
    require_game(game_id)
    store.reset_session(game_id)
    return store.get_session(game_id).to_dict()


@app.post("/api/lifekline/input")
def life_kline_input(body: LifeKlineRequest):
    """只排盘，不调用模型：返回四柱与大运参数。"""
    try:
        return build_life_kline_input(body.birth_time, body.gender, body.name or "")
    except InvalidInput as exc:
        raise http_error(exc) from exc


@app.post("/api/lifekline")
def life_kline(body: LifeKlineRequest, store: AppStore = Depends(get_store)):
    """
    人生K线：排盘 + 模型 JSON 推演 + 容错解析。

    与流式解读共用 lifekline 会话：开始时取消旧请求，
    被中止或被新请求取代时返回 409，不写历史。
    """
    try:
        payload = build_life_kline_input(body.birth_time, body.gender, body.name or "")
        config = provider_config(body, store)
    except (InvalidInput, LLMError) as exc:
        raise http_error(exc) from exc

    controller = store.begin_analysis("lifekline", payload)
    try:
        result = generate_life_analysis(payload, config, cancel_event=controller)
    except AnalysisCancelled as exc:
        store.mark_stopped("lifekline", controller)
        raise HTTPException(status_code=409, detail="分析已中止") from exc
    except (InvalidInput, LLMError, JsonParseFailure) as exc:
        store.fail_analysis("lifekline", controller, str(exc))
        raise http_error(exc) from exc

    summary = result["analysis"]["summary"]
    store.append_text("lifekline", controller, summary)
    if not store.complete_analysis("lifekline", controller):
        raise HTTPException(status_code=409, detail="分析已中止")

    timestamp = store.now()
    store.add_to_history({
        "id": f"lifekline-{timestamp}",
        "game_id": "lifekline",
        "timestamp": timestamp,
        "game": GAME_TYPES["lifekline"],
        "question": f"{payload['birthTime']} {payload['gender']}",
        "summary": summary,
    })
    return {"input": payload, **result}


@app.get("/api/history")
def history(store: AppStore = Depends(get_store)):
    return {"history": to_plain(store.game_history)}


# --- Run with: uvicorn main:app --reload ---
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
