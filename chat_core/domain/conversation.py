from typing import Any, Dict, List, Optional, Protocol

from .models import ChatRecord


class ChatStore(Protocol):
    """聊天记录后端的抽象，每个方法对应一次 REST 调用，不做自动重试。"""

    def list_chats(self, chat_id: Optional[str] = None, include_messages: bool = False) -> List[ChatRecord]:
        ...

    def create_chat(self, snapshot: Dict[str, Any]) -> None:
        ...

    def create_message(self, snapshot: Dict[str, Any]) -> None:
        ...

    def rename_chat(self, chat_id: str, name: str) -> None:
        ...
