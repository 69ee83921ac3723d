"""领域层模型与协议。

包含：
- models: MessageRecord / ChatRecord / TranscriptMessage / PullProgress。
- conversation: ChatStore 协议（推理服务协议见 providers.base）。
- exceptions: 业务异常类型定义。
"""
