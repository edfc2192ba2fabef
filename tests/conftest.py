#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Pytest 全局配置

提供：
- 项目根目录加入 sys.path
- 伪造的 OpenAI 兼容客户端（不发出任何网络请求）
- 注入独立 AppStore 的 FastAPI 测试客户端
"""

import os
import sys
from types import SimpleNamespace

import pytest

# 添加项目根目录到路径
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)


# ==================== 伪造模型客户端 ====================

def make_chunk(content):
    """构造一个流式 chunk，结构与 openai ChatCompletionChunk 一致"""
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    """可迭代、可关闭的流，记录是否被关闭"""

    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __iter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, stream_texts=None, json_text=None, error=None, stream_error=None):
        self.stream_texts = list(stream_texts or [])
        self.json_text = json_text
        self.error = error
        self.stream_error = stream_error
        self.calls = []
        self.streams = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            stream = FakeStream([make_chunk(t) for t in self.stream_texts], self.stream_error)
            self.streams.append(stream)
            return stream
        message = SimpleNamespace(content=self.json_text)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    """只实现 client.chat.completions.create"""

    def __init__(self, **kwargs):
        self.completions = FakeCompletions(**kwargs)
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def fake_client_factory():
    return FakeClient


@pytest.fixture
def provider_config():
    from llm_client import resolve_provider_config
    return resolve_provider_config(provider="gemini", api_key="test-key")


# ==================== 应用和客户端 Fixtures ====================

@pytest.fixture
def store():
    from session_store import AppStore
    return AppStore()


@pytest.fixture
def api_client(store):
    """
    创建测试客户端，每个测试使用独立的 AppStore

    Yields:
        TestClient 实例
    """
    from fastapi.testclient import TestClient
    from main import app, get_store

    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
