"""聊天聚合根。

ChatAggregate 独占自己的消息列表（只追加），并负责：

1. 添加用户消息并持久化：草稿状态走 create_chat，激活后走 create_message。
2. 驱动助手回复：先把 streaming 状态的空消息放进列表（UI 可以实时渲染），
   再把推理服务的字节流交给 StreamFrameDecoder，逐个增量追加到消息里。
3. 流结束后定稿并持久化；流被中断时以 degraded 状态定稿，保留已有内容。
4. 每次成功追加消息后评估是否需要自动重命名。

推理客户端与存储客户端通过构造参数注入（组合），聚合根本身不做任何
HTTP 调用，也不依赖任何 UI；界面通过 ChatObserver 回调订阅变化。
"""

import logging
import threading
from contextlib import closing
from datetime import datetime
from typing import Iterator, List, Literal, Optional, Protocol, Tuple
from uuid import uuid4

from chat_core.aggregates.message import MessageAggregate
from chat_core.config.settings import settings
from chat_core.domain.conversation import ChatStore
from chat_core.domain.exceptions import ChatCoreError, IllegalStateError, NotFoundError, ValidationError
from chat_core.domain.models import ChatRecord, TranscriptMessage, utcnow
from chat_core.infrastructure.logging.logger import log_event
from chat_core.prompts import build_rename_prompt, parse_generated_name
from chat_core.providers.base import InferenceProvider
from chat_core.providers.stream_decoder import StreamFrameDecoder


ChatState = Literal["draft", "active"]


class ChatObserver(Protocol):
    """界面层订阅聚合变化的回调接口。"""

    def on_message(self, chat: "ChatAggregate", message: MessageAggregate) -> None:
        ...

    def on_delta(self, message: MessageAggregate, delta: str) -> None:
        ...

    def on_finalize(self, message: MessageAggregate) -> None:
        ...

    def on_rename(self, chat: "ChatAggregate", name: str) -> None:
        ...


class NullObserver:
    """什么都不做的默认观察者，可继承后只覆盖需要的回调。"""

    def on_message(self, chat: "ChatAggregate", message: MessageAggregate) -> None:
        pass

    def on_delta(self, message: MessageAggregate, delta: str) -> None:
        pass

    def on_finalize(self, message: MessageAggregate) -> None:
        pass

    def on_rename(self, chat: "ChatAggregate", name: str) -> None:
        pass


def should_rename(count: int, every: int = 10) -> bool:
    """第 1 条消息，以及每满 every 条和其后一条时触发重命名。"""

    return count == 1 or count % every in (0, 1)


class ChatAggregate:
    def __init__(
        self,
        inference: InferenceProvider,
        store: ChatStore,
        chat_id: Optional[str] = None,
        name: str = "-",
        created_at: Optional[datetime] = None,
        user_id: Optional[str] = None,
        observer: Optional[ChatObserver] = None,
        cfg=settings,
    ):
        self._id = chat_id or uuid4().hex
        self._name = name or "-"
        self.created_at = created_at or utcnow()
        self.user_id = user_id
        self._inference = inference
        self._store = store
        self._observer = observer or NullObserver()
        self._settings = cfg
        self._messages: List[MessageAggregate] = []
        self._state: ChatState = "draft"
        self._reply_lock = threading.Lock()
        self._abort = threading.Event()
        # 保护流式消息的追加与定稿，abort 可能来自其他线程
        self._message_lock = threading.RLock()
        self._streaming: Optional[MessageAggregate] = None
        self._source: Optional[Iterator[bytes]] = None
        self._reader_thread: Optional[int] = None
        self._last_model: Optional[str] = None

    @classmethod
    def from_record(
        cls,
        record: ChatRecord,
        inference: InferenceProvider,
        store: ChatStore,
        observer: Optional[ChatObserver] = None,
        cfg=settings,
    ) -> "ChatAggregate":
        """从后端记录恢复聊天：已激活，消息均已定稿且已持久化。"""

        chat = cls(
            inference,
            store,
            chat_id=record.id,
            name=record.name,
            created_at=record.created_at,
            user_id=record.user_id,
            observer=observer,
            cfg=cfg,
        )
        chat._state = "active"
        chat._messages = [MessageAggregate.from_record(m) for m in record.messages]
        return chat

    @classmethod
    def load(
        cls,
        chat_id: str,
        inference: InferenceProvider,
        store: ChatStore,
        observer: Optional[ChatObserver] = None,
        cfg=settings,
    ) -> "ChatAggregate":
        for record in store.list_chats(chat_id, include_messages=True):
            if record.id == str(chat_id):
                return cls.from_record(record, inference, store, observer=observer, cfg=cfg)
        raise NotFoundError(code="CHAT_NOT_FOUND", message=str(chat_id), http_status=404)

    # ---- 只读视图 ----

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def messages(self) -> Tuple[MessageAggregate, ...]:
        return tuple(self._messages)

    @property
    def is_replying(self) -> bool:
        return self._reply_lock.locked()

    def transcript(self) -> List[TranscriptMessage]:
        """发给推理服务的上下文：跳过仍在流式中的消息和中断后为空的消息。"""

        return [
            m.to_transcript()
            for m in self._messages
            if not m.is_streaming and not (m.degraded and not m.content)
        ]

    def snapshot(self) -> ChatRecord:
        return ChatRecord(
            id=self._id,
            name=self._name,
            created_at=self.created_at,
            user_id=self.user_id,
            messages=[m.snapshot() for m in self._messages if not m.is_streaming],
        )

    # ---- 状态迁移 ----

    def add_user_message(self, text: str) -> MessageAggregate:
        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="Question is empty")
        self._acquire()
        try:
            message = MessageAggregate(self._id, "user", text)
            message.finalize()
            self._append(message)
            self._persist(message)
            self._maybe_rename()
            return message
        finally:
            self._reply_lock.release()

    def stream_assistant_reply(self, model: str) -> MessageAggregate:
        """流式获取助手回复，返回定稿后的消息。

        中断（abort 或流中途出错）时消息以 degraded 状态定稿并保留部分内容，
        不会自动持久化；出错时异常继续向上抛。
        """

        if not model:
            raise ValidationError(code="MISSING_MODEL", message="model is required")
        self._acquire()
        try:
            self._abort.clear()
            transcript = self.transcript()
            message = MessageAggregate(self._id, "assistant")
            self._append(message)
            self._last_model = model
            decoder = StreamFrameDecoder(cfg=self._settings)
            completed = False
            interrupted = False
            with self._message_lock:
                self._streaming = message
                self._reader_thread = threading.get_ident()
            self._log(logging.INFO, "Streaming assistant reply", model=model, context_messages=len(transcript))
            try:
                with closing(self._inference.chat_stream(model, transcript)) as chunks:
                    with self._message_lock:
                        self._source = chunks
                    with closing(decoder.iter_deltas(chunks)) as deltas:
                        for delta in deltas:
                            with self._message_lock:
                                if self._abort.is_set() or not message.is_streaming:
                                    interrupted = True
                                    break
                                message.append_text(delta)
                            self._observer.on_delta(message, delta)
                completed = not interrupted
            finally:
                with self._message_lock:
                    self._streaming = None
                    self._source = None
                    self._reader_thread = None
                    # 其他线程的 abort 可能已经定稿
                    finalized_here = message.is_streaming
                    if finalized_here:
                        message.finalize(degraded=not completed)
                if finalized_here:
                    if not completed:
                        self._log(
                            logging.WARNING,
                            "Assistant reply interrupted",
                            model=model,
                            partial_chars=len(message.content),
                            frames=decoder.frames_decoded,
                        )
                    self._observer.on_finalize(message)
            if message.degraded:
                return message
            self._persist(message)
            self._maybe_rename()
            return message
        finally:
            self._reply_lock.release()

    def abort(self) -> None:
        """请求中断正在进行的回复。

        在回复线程内（例如 on_delta 回调里）调用时，在下一个增量到达前生效；
        从其他线程调用时立即以 degraded 状态定稿，并关闭正在读取的字节流，
        阻塞中的读取随之结束。
        """

        self._abort.set()
        with self._message_lock:
            message = self._streaming
            source = self._source
            other_thread = self._reader_thread not in (None, threading.get_ident())
            finalized = other_thread and message is not None and message.is_streaming
            if finalized:
                message.finalize(degraded=True)
        if finalized:
            self._log(logging.WARNING, "Assistant reply aborted", partial_chars=len(message.content))
            self._observer.on_finalize(message)
        if other_thread and source is not None:
            stop = getattr(source, "abort", None)
            if callable(stop):
                stop()

    def persist_message(self, message: MessageAggregate) -> None:
        """重试一条未持久化的已定稿消息，不需要重新生成。"""

        if not any(m is message for m in self._messages):
            raise IllegalStateError(code="FOREIGN_MESSAGE", message="message does not belong to this chat")
        if message.is_streaming:
            raise IllegalStateError(code="MESSAGE_STREAMING", message="cannot persist a streaming message")
        if message.persisted:
            return
        self._persist(message)

    # ---- 内部 ----

    def _acquire(self) -> None:
        if not self._reply_lock.acquire(blocking=False):
            raise IllegalStateError(
                code="REPLY_IN_FLIGHT",
                message="another reply is streaming for this chat",
                chat_id=self._id,
            )

    def _append(self, message: MessageAggregate) -> None:
        self._messages.append(message)
        self._observer.on_message(self, message)

    def _persist(self, message: MessageAggregate) -> None:
        try:
            if self._state == "draft":
                # 草稿聊天必须先整体创建，消息随快照一起写入
                included = [
                    m for m in self._messages
                    if not m.is_streaming and (m is message or not m.degraded)
                ]
                record = self.snapshot()
                record.messages = [m.snapshot() for m in included]
                self._store.create_chat(record.to_payload())
                self._state = "active"
                for m in included:
                    m.mark_persisted()
                self._log(logging.INFO, "Created chat", messages=len(included))
            else:
                self._store.create_message(message.snapshot().to_payload())
                message.mark_persisted()
                self._log(logging.INFO, "Stored message", role=message.role, chars=len(message.content))
        except ChatCoreError as e:
            self._log(logging.ERROR, "Failed to persist message", role=message.role, code=e.code, error=e.message)
            raise

    def _maybe_rename(self) -> None:
        count = len(self._messages)
        if not should_rename(count, self._settings.rename_every):
            return
        try:
            model = self._rename_model()
            prompt = build_rename_prompt(m.snapshot() for m in self._messages if not m.is_streaming)
            name = parse_generated_name(self._inference.generate(model, prompt))
            if not name:
                self._log(logging.WARNING, "Model returned an empty chat name", model=model)
                return
            self._name = name
            self._store.rename_chat(self._id, name)
            self._log(logging.INFO, "Renamed chat", name=name, message_count=count)
            self._observer.on_rename(self, name)
        except ChatCoreError as e:
            self._log(logging.WARNING, "Chat rename failed", code=e.code, error=e.message)

    def _rename_model(self) -> str:
        model = self._settings.rename_model or self._last_model
        if model:
            return model
        models = self._inference.list_models()
        if not models:
            raise ValidationError(code="NO_MODEL", message="no model available for renaming")
        return models[0]

    def _log(self, level: int, message: str, **fields) -> None:
        log_event(level, message, chat_id=self._id, **fields)
