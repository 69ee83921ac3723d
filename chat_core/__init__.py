"""Chat Core 顶层包。

本地大模型聊天客户端的核心实现，包括配置加载、领域模型、
推理服务适配与流式解析、聊天记录后端客户端，以及聊天/消息聚合。
"""

from chat_core.aggregates import ChatAggregate, MessageAggregate

__all__ = ["ChatAggregate", "MessageAggregate"]
