"""统一业务异常模型。

所有跨模块抛出的错误都继承自 ChatCoreError，
便于 UI 层统一捕获与提示：

- ValidationError: 输入校验失败（例如空消息）。
- TransportError: HTTP 非 2xx，携带状态码与状态文本。
- NetworkError: 连接失败、超时等，没有 HTTP 状态码。
- ProtocolError: 预期的流式响应体缺失，或帧解析失败次数超限。
- IllegalStateError: 当前聚合状态下不允许的操作。
"""

from typing import Optional


class ChatCoreError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "HTTP_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 url、chat_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(ChatCoreError):
    """参数或输入校验失败。"""


class TransportError(ChatCoreError):
    """HTTP 调用返回非 2xx 状态。"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        status_text: str = "",
        **extra,
    ):
        self.status_code = status_code
        self.status_text = status_text
        super().__init__(code=code, message=message, http_status=status_code or 502, **extra)


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ProtocolError(ChatCoreError):
    """响应格式不符合预期：缺少流式响应体，或帧持续无法解析。"""


class IllegalStateError(ChatCoreError):
    """对当前状态不合法的操作，属于调用方编程错误。"""


class NotFoundError(ChatCoreError):
    """后端中找不到指定的聊天记录。"""
