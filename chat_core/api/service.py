"""对外 API 服务模块。

提供简化的函数接口供界面层调用：列出模型与聊天、打开聊天、
发送一条消息并拿到助手回复、拉取模型。
"""

import logging
from typing import Callable, List, Optional, Tuple

from chat_core.aggregates.chat import ChatAggregate, ChatObserver
from chat_core.aggregates.message import MessageAggregate
from chat_core.config.settings import settings
from chat_core.domain.conversation import ChatStore
from chat_core.domain.models import ChatRecord, PullProgress
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.rest_store import RestChatStore
from chat_core.providers.ollama_client import OllamaClient


_inference: Optional[OllamaClient] = None
_store: Optional[ChatStore] = None


def get_default_clients() -> Tuple[OllamaClient, ChatStore]:
    """获取默认的推理与存储客户端（单例，无状态，可共享）。"""
    global _inference, _store
    if _inference is None:
        _inference = OllamaClient(settings)
    if _store is None:
        _store = RestChatStore(settings)
    return _inference, _store


def list_models() -> List[str]:
    inference, _ = get_default_clients()
    return inference.list_models()


def list_chats() -> List[ChatRecord]:
    _, store = get_default_clients()
    return store.list_chats()


def open_chat(chat_id: Optional[str] = None, observer: Optional[ChatObserver] = None) -> ChatAggregate:
    """打开已有聊天；不传 chat_id 时返回一个新的草稿聊天。"""

    inference, store = get_default_clients()
    if chat_id:
        return ChatAggregate.load(chat_id, inference, store, observer=observer)
    return ChatAggregate(inference, store, observer=observer)


def send_message(chat: ChatAggregate, text: str, model: str) -> Tuple[MessageAggregate, MessageAggregate]:
    """发送用户消息并流式获取回复。

    Returns:
        (用户消息, 助手消息) 的元组

    Raises:
        ValidationError / TransportError / ProtocolError / IllegalStateError
    """
    user_msg = chat.add_user_message(text)
    assistant_msg = chat.stream_assistant_reply(model)
    return user_msg, assistant_msg


def pull_model(model: str, on_progress: Optional[Callable[[PullProgress], None]] = None) -> PullProgress:
    """拉取模型，逐帧回调进度，返回最后一帧。"""

    inference, _ = get_default_clients()
    last = PullProgress(status="unknown")
    for progress in inference.pull(model):
        last = progress
        if on_progress is not None:
            on_progress(progress)
    log_event(logging.INFO, "Model pull finished", model=model, status=last.status)
    return last
