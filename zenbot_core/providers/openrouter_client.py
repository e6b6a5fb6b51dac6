"""OpenRouter Provider 适配器。

使用 OpenAI 兼容的 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式响应为 SSE，以 ``data: [DONE]`` 结束。

本模块只负责建立连接与检查 HTTP 状态；响应体的分帧与分类由 streaming 包完成。
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import httpx

from zenbot_core.config.settings import settings
from zenbot_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from zenbot_core.domain.models import ChatMessage, ChatRequest
from zenbot_core.infrastructure.logging.logger import logger
from zenbot_core.providers.registry import OPENROUTER_CONFIG
from zenbot_core.streaming.cancellation import CancellationToken


class HttpChunkSource:
    """把 httpx 流式响应包装为 ChunkSource。"""

    def __init__(self, response: httpx.Response):
        self._response = response

    def iter_chunks(self) -> Iterator[bytes]:
        return self._response.iter_bytes()

    def close(self) -> None:
        self._response.close()


class OpenRouterClient:
    """OpenRouter Provider 客户端实现。"""

    name = "openrouter"

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 流式 ----

    @contextmanager
    def open_stream(self, req: ChatRequest, token: CancellationToken) -> Iterator[HttpChunkSource]:
        api_key = getattr(self._settings, "openrouter_api_key", None)
        if not api_key:
            raise ValidationError(code="MISSING_API_KEY", message="OPENROUTER_API_KEY not set")
        payload = self._build_payload(req, stream=True)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                token.add_callback(client.close)
                with client.stream(
                    "POST",
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(api_key),
                ) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._raise_for_status(resp)
                    yield HttpChunkSource(resp)
        except (httpx.RequestError, httpx.StreamError) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    # ---- 非流式 ----

    def check_credential(self, api_key: str, model: str) -> bool:
        if not api_key:
            return False
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": "ping"}],
            "max_tokens": 1,
            "stream": False,
        }
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(api_key),
                )
        except httpx.RequestError as e:
            logger.warning("Credential check failed", extra={"extra": {"model": model, "error": str(e)}})
            return False
        return resp.status_code == 200

    def fetch_free_models(self, api_key: Optional[str] = None) -> List[str]:
        key = api_key or getattr(self._settings, "openrouter_api_key", None)
        headers = self._headers(key) if key else {}
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.get(f"{self._base_url()}/models", headers=headers)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            self._raise_for_status(resp)
        data = resp.json()
        return self._parse_free_models(data)

    # ---- 辅助方法 ----

    def _base_url(self) -> str:
        base = getattr(self._settings, "openrouter_base_url", None) or OPENROUTER_CONFIG.base_url
        return base.rstrip("/")

    def _headers(self, api_key: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        referer = getattr(self._settings, "app_referer", None)
        title = getattr(self._settings, "app_title", None)
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title
        return headers

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        msgs: List[Dict[str, Any]] = []
        if req.system_prompt:
            msgs.append({"role": "system", "content": req.system_prompt})
        msgs.extend(self._message_to_payload(m) for m in req.messages)
        payload: Dict[str, Any] = {
            "model": req.model or OPENROUTER_CONFIG.default_model,
            "messages": msgs,
            "stream": stream,
        }
        if req.max_tokens:
            payload["max_tokens"] = min(req.max_tokens, OPENROUTER_CONFIG.max_tokens_limit)
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="OpenRouter rate limit", http_status=429)
        message = resp.text
        try:
            body = resp.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
        except ValueError:
            pass
        raise ApiError(code="API_ERROR", message=message, http_status=resp.status_code)

    @staticmethod
    def _parse_free_models(data: Any) -> List[str]:
        models: List[str] = []
        items = data.get("data") if isinstance(data, dict) else None
        for item in items or []:
            if not isinstance(item, dict):
                continue
            pricing = item.get("pricing") or {}
            if str(pricing.get("prompt")) == "0" and str(pricing.get("completion")) == "0":
                model_id = item.get("id")
                if model_id:
                    models.append(model_id)
        return models
