"""聊天命名提示词。

把对话内容拼成一个 <task>/<chat> 结构的提示词交给模型，
要求它只回复一个不超过三个词的名称。
"""

from typing import Iterable

from chat_core.domain.models import MessageRecord
from chat_core.providers.stream_decoder import THINK_CLOSE, strip_control_markers


RENAME_TASK = "Create a name for following chat with maximum length of 3 words. Only respond with the name."


def build_rename_prompt(messages: Iterable[MessageRecord]) -> str:
    """按 "role: content" 逐条拼接消息，去掉控制标记。"""

    chat = "".join(f"\t{m.role}: {strip_control_markers(m.content)}\n" for m in messages)
    return f"<task>\n\t{RENAME_TASK}\n</task>\n<chat>\n{chat}</chat>"


def parse_generated_name(text: str) -> str:
    """去掉推理段落（最后一个 </think> 之前的内容）以及首尾空白和引号。"""

    if THINK_CLOSE in text:
        text = text.rsplit(THINK_CLOSE, 1)[1]
    return strip_control_markers(text).strip().strip("\"'").strip()
