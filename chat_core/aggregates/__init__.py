"""聊天与消息聚合。"""

from chat_core.aggregates.chat import ChatAggregate, ChatObserver, NullObserver, should_rename
from chat_core.aggregates.message import MessageAggregate

__all__ = ["ChatAggregate", "ChatObserver", "MessageAggregate", "NullObserver", "should_rename"]
