from typing import Any, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.conversation import ChatStore
from chat_core.domain.exceptions import NetworkError, NotFoundError, ProtocolError
from chat_core.domain.models import ChatRecord
from chat_core.providers.ollama_client import raise_for_status


class RestChatStore(ChatStore):
    """通过后端 REST 接口读写聊天与消息。每个方法一次请求，失败不重试。"""

    def __init__(self, cfg=settings, base_url: Optional[str] = None):
        self._settings = cfg
        self._base_url = (base_url or cfg.backend_base_url).rstrip("/")

    def list_chats(self, chat_id: Optional[str] = None, include_messages: bool = False) -> List[ChatRecord]:
        params: Dict[str, str] = {}
        if chat_id:
            params["id"] = str(chat_id)
        if include_messages:
            params["msg"] = "true"
        resp = self._request("GET", "/api/chat", params=params)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError(code="INVALID_JSON", message=str(e))
        if data is None:
            return []
        if not isinstance(data, list):
            raise ProtocolError(code="INVALID_JSON", message="expected a list of chats")
        return [ChatRecord.from_payload(item) for item in data]

    def get_chat(self, chat_id: str) -> ChatRecord:
        """读取单个聊天（含消息）。"""
        for record in self.list_chats(chat_id, include_messages=True):
            if record.id == str(chat_id):
                return record
        raise NotFoundError(code="CHAT_NOT_FOUND", message=str(chat_id), http_status=404)

    def create_chat(self, snapshot: Dict[str, Any]) -> None:
        self._request("POST", "/api/chat", json=snapshot)

    def create_message(self, snapshot: Dict[str, Any]) -> None:
        self._request("POST", "/api/message", json=snapshot)

    def rename_chat(self, chat_id: str, name: str) -> None:
        self._request("PUT", "/api/chat", json={"id": chat_id, "name": name})

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.request(method, url, headers={"Content-Type": "application/json"}, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), url=url)
        raise_for_status(resp, url)
        return resp
