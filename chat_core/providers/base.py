"""推理服务抽象接口。

聊天聚合根不直接依赖 httpx，而是依赖此协议：

- OllamaClient 是默认实现。
- chat_stream 只负责把原始字节流交出去，解析由 StreamFrameDecoder 完成。

测试里可以用内存中的假实现替换它。
"""

from typing import Iterable, Iterator, List, Protocol

from chat_core.domain.models import TranscriptMessage


class InferenceProvider(Protocol):
    """推理服务客户端协议。

    实现者需要提供：
    - list_models(): 可用模型名列表。
    - chat_stream(model, transcript): 一次性的流式对话字节流。
      返回的流可以额外提供 abort()，供其他线程关闭阻塞中的读取。
    - generate(model, prompt): 非流式生成，返回完整文本。
    """

    def list_models(self) -> List[str]:
        ...

    def chat_stream(self, model: str, transcript: Iterable[TranscriptMessage]) -> Iterator[bytes]:
        ...

    def generate(self, model: str, prompt: str) -> str:
        ...
