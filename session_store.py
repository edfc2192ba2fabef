"""
应用状态容器 - 设置、大师、历史记录、UI 状态、各玩法的占卜会话

一个 AppStore 实例就是一份完整状态，由调用方创建并注入（FastAPI 依赖、测试），
不依赖模块级全局变量。持久化边界用 PERSISTED_KEYS 白名单显式声明，
会话与 UI 状态只存在于内存中。

会话并发约定：同一 game_id 同时只有一个分析流程；新的流程开始时先取消旧流程，
旧流程后续的写入因控制器不匹配而被丢弃（后写者胜）。
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from llm_client import AnalysisCancelled
from text_utils import summarize_text

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100
DEFAULT_MASTER_ID = "zhouwenwang"

# 只有这些状态会被持久化
PERSISTED_KEYS = ("settings", "selected_master", "game_history")


class AnalysisStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_plain(value):
    """把会话数据（含 HexagramCast / QiMenChart 等）转成可 JSON 序列化的结构"""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass
class Settings:
    api_key: str = ""
    provider: str = "gemini"
    model: str = ""
    theme: str = "dark"
    sidebar_collapsed: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Settings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class UIState:
    loading: bool = False
    error: Optional[str] = None


@dataclass
class AnalysisSession:
    status: AnalysisStatus = AnalysisStatus.IDLE
    text: str = ""
    error: Optional[str] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    controller: Optional[threading.Event] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "text": self.text,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "running": self.controller is not None,
        }


@dataclass
class DivinationSession:
    data: Any = None
    analysis: AnalysisSession = field(default_factory=AnalysisSession)

    def to_dict(self) -> dict:
        return {"data": to_plain(self.data), "analysis": self.analysis.to_dict()}


class AppStore:
    """
    显式、可注入的状态容器。

    Slices:
        settings          用户设置（持久化）
        selected_master   当前大师 id（持久化）
        game_history      历史记录，新的在前，最多 100 条（持久化）
        ui                loading / error（内存）
        sessions          game_id -> DivinationSession（内存）
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], int] = _now_ms):
        self.settings = settings or Settings()
        self.selected_master = DEFAULT_MASTER_ID
        self.game_history: list = []
        self.current_game: Optional[str] = None
        self.ui = UIState()
        self.sessions: dict = {}
        self._clock = clock
        self._lock = threading.RLock()

    def now(self) -> int:
        return self._clock()

    # --- 设置 ---

    def update_settings(self, **changes) -> Settings:
        known = {f.name for f in fields(Settings)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"未知的设置项：{', '.join(sorted(unknown))}")
        with self._lock:
            for key, value in changes.items():
                setattr(self.settings, key, value)
            return self.settings

    def set_api_key(self, api_key: str) -> None:
        self.update_settings(api_key=(api_key or "").strip())

    def reset_settings(self) -> None:
        with self._lock:
            self.settings = Settings()

    # --- UI ---

    def set_loading(self, loading: bool) -> None:
        self.ui.loading = loading

    def set_error(self, error: Optional[str]) -> None:
        self.ui.error = error

    def clear_error(self) -> None:
        self.ui.error = None

    # --- 大师 ---

    def select_master(self, master_id: str) -> None:
        self.selected_master = master_id

    def ensure_master(self, available_ids) -> str:
        """选中的大师不在可用列表时回到默认大师。"""
        available_ids = list(available_ids)
        if not self.selected_master or (available_ids and self.selected_master not in available_ids):
            self.selected_master = DEFAULT_MASTER_ID
        return self.selected_master

    # --- 历史 ---

    def add_to_history(self, record: dict) -> None:
        with self._lock:
            self.game_history = [record, *self.game_history][:HISTORY_LIMIT]

    def clear_history(self) -> None:
        with self._lock:
            self.game_history = []

    # --- 占卜会话 ---

    def get_session(self, game_id: str) -> DivinationSession:
        with self._lock:
            session = self.sessions.get(game_id)
            if session is None:
                session = self.sessions[game_id] = DivinationSession()
            return session

    def set_session_data(self, game_id: str, data: Any) -> None:
        with self._lock:
            self.get_session(game_id).data = data

    def begin_analysis(self, game_id: str, data: Any = None) -> threading.Event:
        """取消该玩法正在进行的分析，开始新一轮，返回新的取消令牌。"""
        with self._lock:
            session = self.get_session(game_id)
            previous = session.analysis.controller
            if previous is not None:
                previous.set()
                logger.info("Superseding running analysis for %s", game_id)
            controller = threading.Event()
            session.analysis = AnalysisSession(
                status=AnalysisStatus.RUNNING,
                started_at=self._clock(),
                controller=controller,
            )
            if data is not None:
                session.data = data
            self.current_game = game_id
            return controller

    def _owned_analysis(self, game_id: str, controller: threading.Event) -> Optional[AnalysisSession]:
        session = self.sessions.get(game_id)
        if session is None or session.analysis.controller is not controller:
            return None
        return session.analysis

    def append_text(self, game_id: str, controller: threading.Event, chunk: str) -> bool:
        with self._lock:
            analysis = self._owned_analysis(game_id, controller)
            if analysis is None:
                return False
            analysis.text += chunk
            return True

    def _finish(self, game_id, controller, status, error=None) -> bool:
        with self._lock:
            analysis = self._owned_analysis(game_id, controller)
            if analysis is None:
                return False
            analysis.status = status
            analysis.error = error
            analysis.controller = None
            analysis.completed_at = self._clock()
            return True

    def complete_analysis(self, game_id: str, controller: threading.Event) -> bool:
        return self._finish(game_id, controller, AnalysisStatus.COMPLETED)

    def fail_analysis(self, game_id: str, controller: threading.Event, message: str) -> bool:
        return self._finish(game_id, controller, AnalysisStatus.ERROR, message)

    def mark_stopped(self, game_id: str, controller: threading.Event) -> bool:
        return self._finish(game_id, controller, AnalysisStatus.STOPPED)

    def stop_session(self, game_id: str) -> bool:
        """中止正在进行的分析；状态记为 stopped，不记错误。"""
        with self._lock:
            session = self.sessions.get(game_id)
            if session is None or session.analysis.controller is None:
                return False
            session.analysis.controller.set()
            session.analysis.status = AnalysisStatus.STOPPED
            session.analysis.controller = None
            session.analysis.completed_at = self._clock()
            return True

    def reset_session(self, game_id: str) -> None:
        with self._lock:
            session = self.sessions.get(game_id)
            if session is not None and session.analysis.controller is not None:
                session.analysis.controller.set()
            self.sessions[game_id] = DivinationSession()

    # --- 持久化 ---

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "settings": asdict(self.settings),
                "selected_master": self.selected_master,
                "game_history": list(self.game_history),
            }

    def to_json(self) -> str:
        return json.dumps(self.snapshot(), ensure_ascii=False)

    def restore(self, snapshot: dict) -> None:
        """只恢复白名单内的键，其余忽略。"""
        ignored = set(snapshot) - set(PERSISTED_KEYS)
        if ignored:
            logger.debug("Ignoring non-persisted keys: %s", sorted(ignored))
        with self._lock:
            if "settings" in snapshot:
                self.settings = Settings.from_dict(snapshot["settings"])
            if snapshot.get("selected_master"):
                self.selected_master = snapshot["selected_master"]
            if "game_history" in snapshot:
                self.game_history = list(snapshot["game_history"] or [])[:HISTORY_LIMIT]

    @classmethod
    def from_json(cls, text: str) -> "AppStore":
        store = cls()
        store.restore(json.loads(text))
        return store


def run_analysis(
    store: AppStore,
    game_id: str,
    stream_factory: Callable[[threading.Event], Iterator[str]],
    data: Any = None,
    history_entry: Optional[dict] = None,
) -> Iterator[str]:
    """
    驱动一轮分析：开始 → 流式写入 → 终态（completed / stopped / error）。

    stream_factory 接收取消令牌并返回文本块迭代器。取消不算失败；
    其他异常记录到会话后继续抛出，由调用方处理。
    """
    controller = store.begin_analysis(game_id, data)
    stream = None
    try:
        stream = stream_factory(controller)
        for chunk in stream:
            if not store.append_text(game_id, controller, chunk):
                return
            yield chunk
    except AnalysisCancelled:
        store.mark_stopped(game_id, controller)
        return
    except GeneratorExit:
        controller.set()
        store.mark_stopped(game_id, controller)
        raise
    except Exception as exc:
        store.fail_analysis(game_id, controller, str(exc))
        raise
    finally:
        close = getattr(stream, "close", None)
        if callable(close):
            close()

    if store.complete_analysis(game_id, controller):
        text = store.get_session(game_id).analysis.text
        timestamp = store.now()
        record = {
            "id": f"{game_id}-{timestamp}",
            "game_id": game_id,
            "timestamp": timestamp,
            **(history_entry or {}),
            "summary": summarize_text(text),
        }
        store.add_to_history(record)
