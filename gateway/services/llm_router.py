"""
LLM 后处理路由
默认 Cerebras，可通过 X-LLM-Provider: groq 切换；瞬时错误重试，响应文本深度提取并清理标记
"""
import asyncio
from typing import Any, Dict, Optional

from log import log
from config import (
    get_cerebras_api_key,
    get_default_llm_provider,
    get_groq_api_key,
    get_retry_initial_delay,
    get_retry_max_retries,
)
from ..core.cost_model import llm_cost
from ..errors import InternalMisconfiguration, ProviderFatal
from ..models import LlmProvider, PostProcessResult
from ..pipeline import RequestContext
from ..transform.text_processing import build_transcript_user_content, extract_corrected_text, strip_clean_markers
from .cerebras_client import CerebrasClient
from .groq_client import GroqClient
from .retry import retry_with_backoff

MAX_COMPLETION_TOKENS = 32768

API_KEY_GETTERS = {
    LlmProvider.CEREBRAS: get_cerebras_api_key,
    LlmProvider.GROQ: get_groq_api_key,
}


def build_correction_request(system_prompt: str, text: str) -> Dict[str, Any]:
    return {
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": build_transcript_user_content(text)},
        ],
        "temperature": 0,
        "max_tokens": MAX_COMPLETION_TOKENS,
    }


class LlmRouter:
    """后处理路由器"""

    def __init__(self, clients=None, sleep=asyncio.sleep):
        self._clients = clients or {
            LlmProvider.CEREBRAS: CerebrasClient(),
            LlmProvider.GROQ: GroqClient(),
        }
        self._sleep = sleep

    async def resolve_provider(self, requested: Optional[str], ctx: Optional[RequestContext] = None) -> LlmProvider:
        default_name = await get_default_llm_provider()
        try:
            default = LlmProvider(default_name)
        except ValueError:
            default = LlmProvider.CEREBRAS
        if not requested:
            return default
        try:
            return LlmProvider(requested.strip().lower())
        except ValueError:
            message = f"Invalid LLM provider '{requested}', using {default.value}"
            if ctx is not None:
                ctx.logger.warning(message)
            else:
                log.warning(message)
            return default

    async def post_process(self, ctx: RequestContext, text: str, prompt: Optional[str],
                           provider: LlmProvider) -> PostProcessResult:
        """
        后处理转写文本

        提示词为空时不调用 LLM，原文返回且成本为 0
        """
        if not prompt or not prompt.strip():
            return PostProcessResult(corrected=text, provider=provider, applied=False)

        api_key = await API_KEY_GETTERS[provider]()
        if not api_key:
            ctx.logger.error("Missing LLM credential", provider=provider.value)
            raise InternalMisconfiguration("Post-processing service is not configured")

        client = self._clients[provider]
        payload = build_correction_request(prompt, text)
        raw, prompt_tokens, completion_tokens = await retry_with_backoff(
            lambda: client.chat(payload, api_key),
            max_retries=await get_retry_max_retries(),
            initial_delay=await get_retry_initial_delay(),
            label=f"{provider.value} request={ctx.request_id}",
            sleep=self._sleep,
        )

        try:
            corrected = strip_clean_markers(extract_corrected_text(raw))
        except ValueError as e:
            raise ProviderFatal(provider.value, str(e)) from e

        cost = llm_cost(prompt_tokens, completion_tokens, provider.value)
        ctx.logger.info(
            "Post-processing finished",
            provider=provider.value,
            promptTokens=prompt_tokens,
            completionTokens=completion_tokens,
            costUsd=cost,
        )
        return PostProcessResult(
            corrected=corrected,
            provider=provider,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost_usd=cost,
        )
