"""Tests for transcript.py: chat history -> Notion transcript."""

import re

import pytest

import continuity
from errors import NoSessionAvailable
from models import ModelCatalog
from session_pool import Session
from transcript import RequestTranslator, generate_item_id

TID = "0f0e5c1a-1111-4222-8333-444455556666"


@pytest.fixture
def session():
    return Session(token="tok", user_id="user-1", space_id="space-1")


@pytest.fixture
def translator():
    return RequestTranslator(ModelCatalog("anthropic-sonnet-4"), timezone="UTC")


def _history():
    return [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": continuity.embed("Hello!", TID)},
        {"role": "user", "content": [{"type": "text", "text": "How "}, {"type": "text", "text": "are you?"}]},
    ]


def test_item_id_shape():
    assert re.fullmatch(r"2036702a-4d19-80[0-9a-f]{2}-[0-9a-f]{4}-00aa[0-9a-f]{8}", generate_item_id())


def test_new_thread_sends_full_history(translator, session):
    req = translator.build({"model": "apple-danish", "messages": _history()}, session, None)
    body = req.body

    assert req.is_new_thread
    assert body["createThread"] is True
    assert body["threadId"] is None
    assert body["spaceId"] == "space-1"

    types = [item["type"] for item in body["transcript"]]
    assert types == ["config", "context", "user", "user", "markdown-chat", "user"]

    config_item, context_item = body["transcript"][0], body["transcript"][1]
    assert config_item["value"] == {"type": "markdown-chat", "model": "apple-danish"}
    assert context_item["value"]["userId"] == "user-1"
    assert context_item["value"]["spaceId"] == "space-1"
    assert context_item["value"]["timezone"] == "UTC"


def test_markers_are_stripped_from_history(translator, session):
    req = translator.build({"messages": _history()}, session, None)
    assistant = req.transcript[4]
    assert assistant["value"] == "Hello!"
    assert "tid:" not in str(req.body)


def test_user_turn_shape(translator, session):
    req = translator.build({"messages": _history()}, session, None)
    last = req.transcript[-1]
    assert last["value"] == [["How are you?"]]
    assert last["userId"] == "user-1"
    assert "createdAt" in last


def test_continuation_sends_only_latest_user_turn(translator, session):
    req = translator.build({"messages": _history()}, session, TID)
    body = req.body

    assert not req.is_new_thread
    assert body["createThread"] is False
    assert body["threadId"] == TID
    turns = [item for item in body["transcript"] if item["type"] in ("user", "markdown-chat")]
    assert len(turns) == 1
    assert turns[0]["value"] == [["How are you?"]]


def test_unknown_roles_are_skipped(translator, session):
    messages = [{"role": "tool", "content": "x"}, {"role": "user", "content": "q"}]
    req = translator.build({"messages": messages}, session, None)
    assert [i["type"] for i in req.transcript] == ["config", "context", "user"]


def test_model_resolution(translator, session):
    assert translator.build({"messages": [], "model": "Claude Opus 4.5"}, session, None).model == "apple-danish"
    assert translator.build({"messages": []}, session, None).model == "anthropic-sonnet-4"
    assert translator.build({"messages": [], "model": "new-pastry"}, session, None).model == "new-pastry"


def test_no_session_raises(translator):
    with pytest.raises(NoSessionAvailable):
        translator.build({"messages": [{"role": "user", "content": "Hi"}]}, None, None)
