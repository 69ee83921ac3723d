"""推理服务集成层。

该包下的模块负责：
- 定义推理服务抽象接口 (base)。
- 解析 NDJSON 流式响应 (stream_decoder)。
- 提供 Ollama 的具体实现 (ollama_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import InferenceProvider
from chat_core.providers.ollama_client import OllamaClient


def create_provider(base_url: Optional[str] = None) -> InferenceProvider:
    """创建推理服务客户端，默认地址取配置中的 ollama_base_url。"""

    return OllamaClient(settings, base_url=base_url)
