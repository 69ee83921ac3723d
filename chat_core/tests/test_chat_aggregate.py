import json
import threading

import pytest

from chat_core.aggregates.chat import ChatAggregate, NullObserver, should_rename
from chat_core.domain.exceptions import IllegalStateError, NotFoundError, TransportError, ValidationError
from chat_core.domain.models import ChatRecord, MessageRecord, parse_timestamp


class SettingsStub:
    rename_every = 10
    rename_model = None
    max_decode_failures = 5
    control_marker_policy = "strip"


def frame(content):
    return json.dumps({"message": {"role": "assistant", "content": content}}).encode() + b"\n"


class FakeInference:
    def __init__(self, replies=None, name="Greeting Chat"):
        self.replies = list(replies or [])
        self.transcripts = []
        self.generate_calls = []
        self.name = name
        self.generate_error = None
        self.closed = []

    def list_models(self):
        return ["model-x", "model-y"]

    def chat_stream(self, model, transcript):
        self.transcripts.append([(m.role, m.content) for m in transcript])
        return self._chunks(self.replies.pop(0))

    def _chunks(self, chunks):
        try:
            for chunk in chunks:
                if isinstance(chunk, Exception):
                    raise chunk
                yield chunk
        finally:
            self.closed.append(True)

    def generate(self, model, prompt):
        self.generate_calls.append((model, prompt))
        if self.generate_error:
            raise self.generate_error
        return self.name


class FakeStore:
    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self.records = []

    def _call(self, name, payload):
        if name in self.fail_on:
            raise TransportError(code="HTTP_ERROR", message="boom", status_code=500, status_text="Internal Server Error")
        self.calls.append((name, payload))

    def list_chats(self, chat_id=None, include_messages=False):
        return [r for r in self.records if chat_id is None or r.id == chat_id]

    def create_chat(self, snapshot):
        self._call("create_chat", snapshot)

    def create_message(self, snapshot):
        self._call("create_message", snapshot)

    def rename_chat(self, chat_id, name):
        self._call("rename_chat", {"id": chat_id, "name": name})

    def names(self):
        return [name for name, _ in self.calls]


def make_chat(replies=None, observer=None):
    inference = FakeInference(replies)
    store = FakeStore()
    chat = ChatAggregate(inference, store, observer=observer, cfg=SettingsStub())
    return chat, inference, store


@pytest.mark.parametrize("count", range(1, 26))
def test_rename_trigger_set(count):
    assert should_rename(count) == (count in {1, 10, 11, 20, 21})


def test_end_to_end_first_exchange():
    body = frame("Hi") + frame(" there")
    chat, inference, store = make_chat([[body[:7], body[7:30], body[30:]]])
    assert chat.state == "draft"

    chat.add_user_message("Hello")
    assert chat.state == "active"
    assert store.names() == ["create_chat", "rename_chat"]
    created = store.calls[0][1]
    assert created["id"] == chat.id
    assert [(m["role"], m["content"]) for m in created["messages"]] == [("user", "Hello")]
    assert chat.name == "Greeting Chat"
    assert inference.generate_calls[0][0] == "model-x"

    reply = chat.stream_assistant_reply("model-x")
    assert reply.content == "Hi there"
    assert reply.state == "finalized"
    assert reply.persisted
    assert inference.transcripts == [[("user", "Hello")]]
    assert store.names() == ["create_chat", "rename_chat", "create_message"]
    assert store.calls[2][1]["content"] == "Hi there"
    assert store.calls[2][1]["role"] == "assistant"
    assert len(chat.messages) == 2
    assert len(inference.generate_calls) == 1


def test_second_user_message_uses_create_message():
    chat, _, store = make_chat()
    chat.add_user_message("one")
    store.calls.clear()
    chat.add_user_message("two")
    assert store.names() == ["create_message"]
    assert store.calls[0][1]["chat_id"] == chat.id


def test_blank_input_rejected():
    chat, _, store = make_chat()
    for text in ("", "   ", "\n\t"):
        with pytest.raises(ValidationError):
            chat.add_user_message(text)
    assert chat.messages == ()
    assert store.calls == []


def test_rename_fires_at_expected_counts():
    chat, inference, store = make_chat()
    for i in range(11):
        chat.add_user_message(f"msg {i}")
    assert len(inference.generate_calls) == 3
    assert store.names().count("rename_chat") == 3


def test_rename_prompt_strips_control_markers():
    body = frame("<think>") + frame("plan") + frame("</think>") + frame("answer")
    chat, inference, _ = make_chat([[body]] * 9)
    chat.add_user_message("q")
    for _ in range(4):
        chat.stream_assistant_reply("model-y")
        chat.add_user_message("q")
    chat.stream_assistant_reply("model-y")
    assert len(chat.messages) == 10
    model, prompt = inference.generate_calls[-1]
    assert model == "model-y"
    assert "<think>" not in prompt and "</think>" not in prompt
    assert "\tassistant: plananswer\n" in prompt
    assert prompt.startswith("<task>")


def test_control_tokens_filtered_from_reply():
    body = frame("<think>") + frame("reasoning text") + frame("</think>") + frame("final answer")
    chat, _, store = make_chat([[body]])
    chat.add_user_message("why?")
    reply = chat.stream_assistant_reply("model-x")
    assert "<think>" not in reply.content and "</think>" not in reply.content
    assert "reasoning text" in reply.content
    assert "final answer" in reply.content
    assert store.calls[-1][1]["content"] == reply.content


def test_rename_failure_is_swallowed():
    chat, inference, store = make_chat()
    inference.generate_error = TransportError(code="HTTP_ERROR", message="down", status_code=500)
    msg = chat.add_user_message("Hello")
    assert msg.persisted
    assert chat.name == "-"
    assert store.names() == ["create_chat"]


def test_rename_persist_failure_keeps_message():
    chat, _, store = make_chat()
    store.fail_on.add("rename_chat")
    msg = chat.add_user_message("Hello")
    assert msg.persisted
    assert store.names() == ["create_chat"]


def test_empty_generated_name_leaves_name_unchanged():
    chat, inference, store = make_chat()
    inference.name = "<think>hmm</think>  "
    chat.add_user_message("Hello")
    assert chat.name == "-"
    assert "rename_chat" not in store.names()


def test_second_stream_rejected_while_in_flight():
    body = frame("a") + frame("b") + frame("c")
    errors = []

    class Reentrant(NullObserver):
        def on_delta(self, message, delta):
            for call in (lambda: chat.stream_assistant_reply("model-x"), lambda: chat.add_user_message("x")):
                try:
                    call()
                except IllegalStateError as e:
                    errors.append(e.code)

    chat, inference, store = make_chat([[body], [frame("again")]], observer=Reentrant())
    chat.add_user_message("hi")
    reply = chat.stream_assistant_reply("model-x")
    assert reply.content == "abc"
    assert errors == ["REPLY_IN_FLIGHT"] * 6
    assert len(chat.messages) == 2
    assert not chat.is_replying


def test_stream_allowed_again_after_completion():
    chat, _, _ = make_chat([[frame("one")], [frame("two")]])
    chat.add_user_message("hi")
    chat.stream_assistant_reply("model-x")
    second = chat.stream_assistant_reply("model-x")
    assert second.content == "two"
    assert [m.role for m in chat.messages] == ["user", "assistant", "assistant"]


def test_abort_finalizes_partial_message():
    body = frame("first") + frame(" second") + frame(" third")

    class AbortAfterFirst(NullObserver):
        def __init__(self):
            self.finalized = []

        def on_delta(self, message, delta):
            chat.abort()

        def on_finalize(self, message):
            self.finalized.append(message)

    observer = AbortAfterFirst()
    chat, inference, store = make_chat([[body[:10], body[10:]]], observer=observer)
    chat.add_user_message("hi")
    store.calls.clear()
    reply = chat.stream_assistant_reply("model-x")
    assert reply.state == "finalized"
    assert reply.degraded
    assert reply.content == "first"
    assert not reply.persisted
    assert store.calls == []
    assert observer.finalized == [reply]
    assert inference.closed == [True]

    chat.persist_message(reply)
    assert reply.persisted
    assert store.names() == ["create_message"]


class GatedStream:
    """先给出一块数据，然后阻塞到 abort() 打开闸门。"""

    def __init__(self, first):
        self.first = first
        self.gate = threading.Event()
        self.aborted = False
        self.closed = False

    def __iter__(self):
        yield self.first
        self.gate.wait(5)

    def abort(self):
        self.aborted = True
        self.gate.set()

    def close(self):
        self.closed = True


def test_abort_from_another_thread_unblocks_stream():
    stream = GatedStream(frame("partial"))
    first_delta = threading.Event()

    class Recorder(NullObserver):
        def __init__(self):
            self.finalized = []

        def on_delta(self, message, delta):
            first_delta.set()

        def on_finalize(self, message):
            self.finalized.append(message)

    observer = Recorder()
    chat, inference, store = make_chat(observer=observer)
    chat.add_user_message("hi")
    store.calls.clear()
    inference.chat_stream = lambda model, transcript: stream

    result = []
    worker = threading.Thread(target=lambda: result.append(chat.stream_assistant_reply("model-x")))
    worker.start()
    assert first_delta.wait(5)
    chat.abort()

    reply = chat.messages[-1]
    assert reply.state == "finalized"
    assert reply.degraded
    assert reply.content == "partial"

    worker.join(5)
    assert not worker.is_alive()
    assert result == [reply]
    assert stream.aborted
    assert stream.closed
    assert not reply.persisted
    assert store.calls == []
    assert observer.finalized == [reply]
    assert not chat.is_replying


def test_abort_during_last_delta_keeps_complete_reply():
    class AbortOnLast(NullObserver):
        def on_delta(self, message, delta):
            if delta == "b":
                chat.abort()

    chat, _, store = make_chat([[frame("a") + frame("b")]], observer=AbortOnLast())
    chat.add_user_message("hi")
    store.calls.clear()
    reply = chat.stream_assistant_reply("model-x")
    assert reply.content == "ab"
    assert not reply.degraded
    assert reply.persisted
    assert store.names() == ["create_message"]


def test_transport_error_mid_stream_propagates():
    err = TransportError(code="NETWORK_ERROR", message="reset")
    chat, _, store = make_chat([[frame("partial"), err], [frame("ok")]])
    chat.add_user_message("hi")
    with pytest.raises(TransportError):
        chat.stream_assistant_reply("model-x")
    broken = chat.messages[-1]
    assert broken.state == "finalized"
    assert broken.degraded
    assert broken.content == "partial"
    assert not chat.is_replying

    chat.stream_assistant_reply("model-x")
    assert chat.messages[-1].content == "ok"


def test_empty_degraded_message_left_out_of_transcript():
    err = TransportError(code="HTTP_ERROR", message="bad", status_code=500)
    chat, inference, _ = make_chat([[err], [frame("ok")]])
    chat.add_user_message("hi")
    with pytest.raises(TransportError):
        chat.stream_assistant_reply("model-x")
    chat.stream_assistant_reply("model-x")
    assert inference.transcripts[-1] == [("user", "hi")]


def test_persist_failure_keeps_message_for_retry():
    chat, _, store = make_chat([[frame("Hi")]])
    chat.add_user_message("Hello")
    store.fail_on.add("create_message")
    with pytest.raises(TransportError):
        chat.stream_assistant_reply("model-x")
    reply = chat.messages[-1]
    assert reply.content == "Hi"
    assert not reply.persisted
    assert not reply.degraded

    store.fail_on.clear()
    store.calls.clear()
    chat.persist_message(reply)
    assert reply.persisted
    assert store.names() == ["create_message"]
    chat.persist_message(reply)
    assert store.names() == ["create_message"]


def test_failed_create_chat_keeps_draft():
    chat, _, store = make_chat()
    store.fail_on.add("create_chat")
    with pytest.raises(TransportError):
        chat.add_user_message("first")
    assert chat.state == "draft"
    assert not chat.messages[0].persisted

    store.fail_on.clear()
    chat.add_user_message("second")
    assert chat.state == "active"
    assert store.names()[0] == "create_chat"
    assert [m["content"] for m in store.calls[0][1]["messages"]] == ["first", "second"]
    assert all(m.persisted for m in chat.messages)


def test_persist_message_rejects_foreign_message():
    chat, _, _ = make_chat()
    other, _, _ = make_chat()
    msg = other.add_user_message("hello")
    with pytest.raises(IllegalStateError):
        chat.persist_message(msg)


def test_load_existing_chat():
    record = ChatRecord(
        id="abc",
        name="Old Chat",
        created_at=parse_timestamp("2024-05-01T10:00:00Z"),
        messages=[
            MessageRecord("abc", "user", "Hello", parse_timestamp("2024-05-01T10:00:01Z")),
            MessageRecord("abc", "assistant", "Hi", parse_timestamp("2024-05-01T10:00:02Z")),
        ],
    )
    inference = FakeInference([[frame("Sure")]])
    store = FakeStore()
    store.records.append(record)
    chat = ChatAggregate.load("abc", inference, store, cfg=SettingsStub())
    assert chat.state == "active"
    assert chat.name == "Old Chat"
    assert all(m.persisted for m in chat.messages)

    chat.add_user_message("More?")
    assert store.names() == ["create_message"]
    chat.stream_assistant_reply("model-x")
    assert inference.transcripts[0] == [("user", "Hello"), ("assistant", "Hi"), ("user", "More?")]

    with pytest.raises(NotFoundError):
        ChatAggregate.load("missing", inference, store, cfg=SettingsStub())


def test_stream_requires_model():
    chat, _, _ = make_chat()
    with pytest.raises(ValidationError):
        chat.stream_assistant_reply("")
