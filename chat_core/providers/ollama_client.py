"""Ollama 推理服务适配器。

本模块负责：

1. 列出可用模型（GET /api/tags）。
2. 发起流式对话（POST /api/chat），把原始字节块交给调用方。
3. 非流式生成（POST /api/generate），用于给聊天起名字。
4. 拉取模型（POST /api/pull），进度帧同样是 NDJSON。

流式接口只负责传输，帧的拼接与解析交给 StreamFrameDecoder。
"""

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import NetworkError, ProtocolError, TransportError
from chat_core.domain.models import PullProgress, TranscriptMessage
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.stream_decoder import StreamFrameDecoder


def raise_for_status(resp: httpx.Response, url: str) -> None:
    """非 2xx 统一包装为 TransportError，携带状态码与状态文本。"""

    if 200 <= resp.status_code < 300:
        return
    status_text = getattr(resp, "reason_phrase", "") or ""
    raise TransportError(
        code="HTTP_ERROR",
        message=f"HTTP Error! Status: {resp.status_code}: {status_text}",
        status_code=resp.status_code,
        status_text=status_text,
        url=url,
    )


class ByteStream:
    """一次性的响应字节流。

    惰性打开：第一次迭代时才发请求。abort() 可以从其他线程调用，
    会关闭底层 httpx 响应，使阻塞中的读取尽快结束；被中断的流
    静默结束，不再抛网络错误。
    """

    def __init__(self, open_chunks: Callable[["ByteStream"], Iterator[bytes]]):
        self._open = open_chunks
        self._chunks: Optional[Iterator[bytes]] = None
        self._response: Optional[httpx.Response] = None
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def __iter__(self) -> "ByteStream":
        return self

    def __next__(self) -> bytes:
        if self._chunks is None:
            self._chunks = self._open(self)
        return next(self._chunks)

    def attach(self, response: httpx.Response) -> None:
        self._response = response
        if self._aborted:
            response.close()

    def abort(self) -> None:
        self._aborted = True
        response = self._response
        if response is not None:
            response.close()

    def close(self) -> None:
        if self._chunks is not None:
            self._chunks.close()


class OllamaClient:
    """推理服务客户端实现。

    无状态：每次调用新建一个 httpx.Client，可以被多个聊天共享。
    """

    name = "ollama"

    def __init__(self, cfg=settings, base_url: Optional[str] = None):
        self._settings = cfg
        self._base_url = (base_url or cfg.ollama_base_url).rstrip("/")

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, *api_path: str) -> str:
        return f"{self._base_url}/api/{'/'.join(api_path)}"

    # ---- 非流式 ----

    def list_models(self) -> List[str]:
        url = self._url("tags")
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.get(url)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), url=url)
        raise_for_status(resp, url)
        data = self._json(resp, url)
        return [m["name"] for m in data.get("models") or [] if m.get("name")]

    def generate(self, model: str, prompt: str) -> str:
        url = self._url("generate")
        payload = {"model": model, "prompt": prompt, "stream": False}
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(url, json=payload, headers={"Content-Type": "application/json"})
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), url=url)
        raise_for_status(resp, url)
        data = self._json(resp, url)
        text = data.get("response")
        if not isinstance(text, str):
            raise ProtocolError(code="MISSING_RESPONSE", message="generate reply has no response field", url=url)
        return text

    # ---- 流式 ----

    def chat_stream(self, model: str, transcript: Iterable[TranscriptMessage]) -> "ByteStream":
        """一次性的对话字节流；重新调用会从头开始一次新的生成。"""

        payload = {"model": model, "messages": [m.to_payload() for m in transcript]}
        return ByteStream(lambda stream: self._stream("chat", payload, stream))

    def pull_stream(self, model: str) -> "ByteStream":
        return ByteStream(lambda stream: self._stream("pull", {"model": model}, stream))

    def pull(self, model: str) -> Iterator[PullProgress]:
        """拉取模型并逐帧产出进度。"""

        decoder = StreamFrameDecoder(cfg=self._settings)
        for frame in decoder.iter_frames(self.pull_stream(model)):
            yield PullProgress.from_frame(frame)

    def _stream(self, endpoint: str, payload: Dict[str, Any], stream: "ByteStream") -> Iterator[bytes]:
        url = self._url(endpoint)
        timeout = httpx.Timeout(self._settings.http_timeout, read=self._settings.stream_timeout)
        received = 0
        try:
            with httpx.Client(timeout=timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                ) as resp:
                    stream.attach(resp)
                    raise_for_status(resp, url)
                    for chunk in resp.iter_bytes():
                        if not chunk:
                            continue
                        received += len(chunk)
                        yield chunk
        except (httpx.RequestError, httpx.StreamError) as e:
            if stream.aborted:
                log_event(logging.INFO, "Stream aborted", url=url, bytes=received)
                return
            if isinstance(e, httpx.StreamError):
                raise
            raise NetworkError(code="NETWORK_ERROR", message=str(e), url=url)
        if stream.aborted:
            log_event(logging.INFO, "Stream aborted", url=url, bytes=received)
            return
        if not received:
            raise ProtocolError(code="EMPTY_STREAM", message="Readable stream not found.", url=url)
        log_event(logging.DEBUG, "Stream finished", url=url, bytes=received)

    @staticmethod
    def _json(resp: httpx.Response, url: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError(code="INVALID_JSON", message=str(e), url=url)
        if not isinstance(data, dict):
            raise ProtocolError(code="INVALID_JSON", message="expected a JSON object", url=url)
        return data
