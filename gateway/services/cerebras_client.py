"""
Cerebras 对话补全客户端（默认后处理提供商）
"""
from typing import Any, Dict, Tuple

from config import get_http_timeout
from .groq_client import extract_usage
from .retry import parse_json_body, send_provider_request

CEREBRAS_BASE_URL = "https://api.cerebras.ai/v1"
CEREBRAS_CHAT_MODEL = "llama-3.3-70b"


class CerebrasClient:

    async def chat(self, payload: Dict[str, Any], api_key: str) -> Tuple[Any, int, int]:
        resp = await send_provider_request(
            "cerebras",
            "POST",
            f"{CEREBRAS_BASE_URL}/chat/completions",
            timeout=await get_http_timeout(),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json={"model": CEREBRAS_CHAT_MODEL, **payload, "stream": False},
        )
        body = parse_json_body("cerebras", resp)
        prompt_tokens, completion_tokens = extract_usage(body)
        return body, prompt_tokens, completion_tokens
