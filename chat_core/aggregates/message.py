"""单条消息的聚合。

消息有两个状态：
- streaming: 内容只能追加。
- finalized: 内容不可变，可以生成持久化快照。

用户消息创建即定稿；助手消息以空内容进入 streaming，
流结束（或中断）后定稿。持久化由所属的 ChatAggregate 负责，
消息本身不持有任何客户端引用。
"""

from datetime import datetime
from typing import List, Literal, Optional

from chat_core.domain.exceptions import IllegalStateError
from chat_core.domain.models import MessageRecord, Role, TranscriptMessage, utcnow


MessageState = Literal["streaming", "finalized"]


class MessageAggregate:
    def __init__(
        self,
        chat_id: str,
        role: Role,
        content: str = "",
        created_at: Optional[datetime] = None,
    ):
        self.chat_id = chat_id
        self.role: Role = role
        self.created_at = created_at or utcnow()
        self._parts: List[str] = [content] if content else []
        self._state: MessageState = "streaming"
        self._snapshot: Optional[MessageRecord] = None
        self.degraded = False
        self.persisted = False

    @classmethod
    def from_record(cls, record: MessageRecord, persisted: bool = True) -> "MessageAggregate":
        msg = cls(record.chat_id, record.role, record.content, record.created_at)
        msg.finalize()
        msg.persisted = persisted
        return msg

    @property
    def state(self) -> MessageState:
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._state == "streaming"

    @property
    def content(self) -> str:
        if self._snapshot is not None:
            return self._snapshot.content
        return "".join(self._parts)

    def append_text(self, delta: str) -> None:
        if self._state != "streaming":
            raise IllegalStateError(code="MESSAGE_FINALIZED", message="cannot append to a finalized message")
        if delta:
            self._parts.append(delta)

    def finalize(self, degraded: bool = False) -> MessageRecord:
        """结束 streaming 状态，返回不可变快照。degraded 表示内容因中断而不完整。"""

        if self._state != "streaming":
            raise IllegalStateError(code="MESSAGE_FINALIZED", message="message already finalized")
        self._snapshot = MessageRecord(
            chat_id=self.chat_id,
            role=self.role,
            content="".join(self._parts),
            created_at=self.created_at,
        )
        self._parts = []
        self._state = "finalized"
        self.degraded = degraded
        return self._snapshot

    def snapshot(self) -> MessageRecord:
        if self._snapshot is None:
            raise IllegalStateError(code="MESSAGE_STREAMING", message="message is still streaming")
        return self._snapshot

    def mark_persisted(self) -> None:
        if self._snapshot is None:
            raise IllegalStateError(code="MESSAGE_STREAMING", message="cannot persist a streaming message")
        self.persisted = True

    def to_transcript(self) -> TranscriptMessage:
        return TranscriptMessage(role=self.role, content=self.content)

    def __repr__(self) -> str:
        return (
            f"MessageAggregate(role={self.role!r}, state={self._state!r}, "
            f"chars={len(self.content)}, degraded={self.degraded}, persisted={self.persisted})"
        )
