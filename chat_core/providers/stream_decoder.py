"""流式响应解析器。

推理服务以换行分隔的 JSON（NDJSON）返回流式结果，每帧一个对象：

    {"message": {"role": "assistant", "content": "Hi"}, "done": false}\\n

传输层给出的字节块边界与帧边界无关：一帧可能被拆到多个块里，
一个块也可能包含多帧。解析器维护一个跨块的残余缓冲区，
只在看到换行符时才解析一帧，因此不会丢帧，也不会把半帧当成坏帧。
按字节切分，所以被拆开的 UTF-8 多字节字符也能正确还原。

控制标记（<think> / </think>）按配置的策略处理：
- strip: 删除标记本身，保留前后文本。
- bracket: 替换成 [think] / [/think]。
"""

import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from chat_core.config.settings import settings
from chat_core.domain.exceptions import IllegalStateError, ProtocolError
from chat_core.infrastructure.logging.logger import log_event


THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

CONTROL_MARKERS: Dict[str, str] = {
    THINK_OPEN: "[think]",
    THINK_CLOSE: "[/think]",
}


def apply_marker_policy(text: str, policy: str = "strip") -> str:
    """按策略处理文本中的控制标记。"""

    for marker, placeholder in CONTROL_MARKERS.items():
        text = text.replace(marker, "" if policy == "strip" else placeholder)
    return text


def strip_control_markers(text: str) -> str:
    """删除原始标记和方括号替换后的标记，用于拼接重命名提示词。"""

    for marker, placeholder in CONTROL_MARKERS.items():
        text = text.replace(marker, "").replace(placeholder, "")
    return text


def _split_partial_marker(text: str) -> Tuple[str, str]:
    """若文本末尾可能是被拆开的控制标记前缀，把这段前缀扣下来。"""

    hold = 0
    for marker in CONTROL_MARKERS:
        for k in range(len(marker) - 1, hold, -1):
            if text.endswith(marker[:k]):
                hold = k
                break
    if not hold:
        return text, ""
    return text[:-hold], text[-hold:]


class StreamFrameDecoder:
    """把字节块序列还原为帧序列和文本增量序列。

    一个实例只消费一条流（不可重启）。可以用 iter_frames / iter_deltas
    直接包裹字节块迭代器，也可以用 feed / close 手动推送。
    """

    def __init__(
        self,
        max_failures: Optional[int] = None,
        marker_policy: Optional[str] = None,
        cfg=settings,
    ):
        self._max_failures = max_failures or cfg.max_decode_failures
        self._policy = marker_policy or cfg.control_marker_policy
        self._buffer = bytearray()
        self._failures = 0
        self._frames = 0
        self._started = False
        self._closed = False

    @property
    def frames_decoded(self) -> int:
        return self._frames

    # ---- 推送式接口 ----

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """追加一个字节块，立即解析并返回其中已完整的帧。"""

        self._push(chunk)
        return list(self._drain())

    def close(self) -> Iterator[Dict[str, Any]]:
        """流结束：把没有换行结尾的残余数据当作最后一帧解析。"""

        self._closed = True
        residual = bytes(self._buffer)
        self._buffer.clear()
        frame = self._parse(residual)
        return iter(() if frame is None else (frame,))

    # ---- 迭代式接口 ----

    def iter_frames(self, chunks: Iterable[bytes]) -> Iterator[Dict[str, Any]]:
        if self._started:
            raise IllegalStateError(code="DECODER_REUSED", message="decoder can only consume one stream")
        self._started = True
        for chunk in chunks:
            if chunk:
                # 逐帧产出，同一块里靠前的帧先交给调用方
                self._push(chunk)
                yield from self._drain()
        yield from self.close()

    def iter_deltas(self, chunks: Iterable[bytes]) -> Iterator[str]:
        """产出文本增量，已按策略处理控制标记，空增量不产出。"""

        pending = ""
        for frame in self.iter_frames(chunks):
            content = self.extract_content(frame)
            if not content:
                continue
            text, pending = _split_partial_marker(pending + content)
            text = apply_marker_policy(text, self._policy)
            if text:
                yield text
        if pending:
            tail = apply_marker_policy(pending, self._policy)
            if tail:
                yield tail

    @staticmethod
    def extract_content(frame: Dict[str, Any]) -> str:
        message = frame.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        return content if isinstance(content, str) else ""

    # ---- 内部 ----

    def _push(self, chunk: bytes) -> None:
        if self._closed:
            raise IllegalStateError(code="DECODER_CLOSED", message="decoder already reached end of stream")
        self._buffer.extend(chunk)

    def _drain(self) -> Iterator[Dict[str, Any]]:
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                return
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            frame = self._parse(line)
            if frame is not None:
                yield frame

    def _parse(self, line: bytes) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        try:
            frame = json.loads(line.decode("utf-8"))
            if not isinstance(frame, dict):
                raise ValueError(f"frame is {type(frame).__name__}, expected object")
        except ValueError as e:
            # JSONDecodeError 与 UnicodeDecodeError 都是 ValueError
            self._failures += 1
            log_event(
                logging.WARNING,
                "Skipped malformed stream frame",
                error=str(e),
                consecutive_failures=self._failures,
                frame_preview=line[:80].decode("utf-8", errors="replace"),
            )
            if self._failures >= self._max_failures:
                raise ProtocolError(
                    code="DECODE_FAILED",
                    message=f"{self._failures} consecutive malformed frames",
                    failures=self._failures,
                )
            return None
        self._failures = 0
        if frame.get("error"):
            raise ProtocolError(code="SERVER_ERROR", message=str(frame["error"]))
        self._frames += 1
        return frame
