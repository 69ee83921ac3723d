"""统一的聊天数据模型。

本模块定义客户端内部共享的标准数据结构：

- TranscriptMessage: 发给推理服务的一条对话消息（role + content）。
- MessageRecord: 一条已定稿消息的不可变快照，用于持久化。
- ChatRecord: 后端返回的聊天记录（含可选的消息列表）。
- PullProgress: 拉取模型时的进度帧。

时间戳在线上统一为 ISO-8601 UTC 字符串，以 "Z" 结尾。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional


# 消息角色（与推理服务的 role 字段对应）
Role = Literal["user", "assistant"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """解析后端时间戳；缺失或无法解析时返回当前时间。"""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return utcnow()
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return utcnow()
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class TranscriptMessage:
    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class MessageRecord:
    """一条消息的持久化快照。

    - chat_id: 所属聊天 ID。
    - role: user / assistant。
    - content: 定稿后的完整文本。
    - created_at: 创建时间（UTC）。
    """

    chat_id: str
    role: Role
    content: str
    created_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "role": self.role,
            "content": self.content,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "MessageRecord":
        return cls(
            chat_id=str(data.get("chat_id") or ""),
            role=data.get("role") or "user",
            content=data.get("content") or "",
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass
class ChatRecord:
    """后端存储中的一条聊天记录。"""

    id: str
    name: str
    created_at: datetime
    user_id: Optional[str] = None
    messages: List[MessageRecord] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "user_id": self.user_id,
            "created_at": format_timestamp(self.created_at),
            "messages": [m.to_payload() for m in self.messages],
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ChatRecord":
        user_id = data.get("user_id")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "-",
            created_at=parse_timestamp(data.get("created_at")),
            user_id=str(user_id) if user_id is not None else None,
            messages=[MessageRecord.from_payload(m) for m in data.get("messages") or []],
        )


@dataclass
class PullProgress:
    """拉取模型时服务端返回的一帧进度。"""

    status: str
    completed: Optional[int] = None
    total: Optional[int] = None

    @property
    def ratio(self) -> Optional[float]:
        """completed/total；任一缺失或 total 为 0 时进度不确定，返回 None。"""

        if self.completed is None or not self.total:
            return None
        return self.completed / self.total

    def describe(self) -> str:
        ratio = self.ratio
        if ratio is None or "pulling" not in self.status:
            return self.status
        return f"{self.status} \t{round(100 * ratio)}%"

    @classmethod
    def from_frame(cls, frame: Dict[str, Any]) -> "PullProgress":
        return cls(
            status=str(frame.get("status") or "unknown"),
            completed=_as_int(frame.get("completed")),
            total=_as_int(frame.get("total")),
        )


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
