"""
Study Engine - OpenAI-Compatible Narrative Client
Supports OpenAI, Ollama, and any OpenAI-compatible API endpoint.
"""

import asyncio
from typing import List, Dict, Any, Optional, Callable
from functools import wraps

from openai import AsyncOpenAI, APIError, APIConnectionError, RateLimitError

from config import get_ai_config, AIConfig
from logger import get_logger
from narrative import NarrativeEnhancer, NullEnhancer, strip_reasoning

logger = get_logger(__name__)


# ============================================
# RETRY DECORATOR
# ============================================

def retry_on_error(max_retries: int = 3, delay: float = 1.0):
    """
    Decorator to retry async API calls on transient errors.

    Args:
        max_retries: Maximum number of retry attempts
        delay: Initial delay between retries (exponential backoff)
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_error = None
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except (RateLimitError, APIConnectionError) as e:
                    last_error = e
                    wait_time = delay * (2 ** attempt)
                    kind = "Rate limited" if isinstance(e, RateLimitError) else "Connection error"
                    logger.warning(f"{kind}, retry {attempt + 1}/{max_retries} in {wait_time}s")
                    await asyncio.sleep(wait_time)
                except APIError:
                    # Auth, bad model and the like are not transient
                    raise
            raise last_error
        return wrapper
    return decorator


# ============================================
# AI CLIENT
# ============================================

class AIClient(NarrativeEnhancer):
    """
    OpenAI-compatible narrative enhancer.

    Usage:
        client = AIClient()  # Uses config from .env
        text = await client.generate([{"role": "user", "content": "Hello!"}])

        # With custom config
        client = AIClient(base_url="http://localhost:11434/v1", model="llama3")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        config: Optional[AIConfig] = None
    ):
        cfg = config or get_ai_config()

        self.base_url = base_url or cfg.api_base_url
        self.api_key = api_key or cfg.api_key
        self.model = model or cfg.model_name
        self.default_temperature = cfg.temperature
        self.default_max_tokens = cfg.max_tokens

        self._client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=self.api_key or "dummy-key"  # Some local LLMs don't require keys
        )

        logger.info(f"AIClient initialized: base_url={self.base_url}, model={self.model}")

    @retry_on_error(max_retries=3, delay=1.0)
    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Send a chat completion request.

        Returns:
            Response dict with:
                - content: Text content of response
                - finish_reason: Why generation stopped
                - usage: Token usage stats
        """
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.default_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.default_max_tokens,
        }

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error(f"Chat completion failed: {e}")
            raise

        choice = response.choices[0]
        return {
            "content": choice.message.content or "",
            "finish_reason": choice.finish_reason,
            "usage": {
                "prompt_tokens": response.usage.prompt_tokens if response.usage else 0,
                "completion_tokens": response.usage.completion_tokens if response.usage else 0,
                "total_tokens": response.usage.total_tokens if response.usage else 0,
            }
        }

    async def generate(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        response = await self.chat(messages, temperature=temperature, max_tokens=max_tokens)
        return strip_reasoning(response["content"])


# ============================================
# SINGLETON INSTANCE
# ============================================

_client: Optional[NarrativeEnhancer] = None


def get_enhancer() -> NarrativeEnhancer:
    """
    Get or create the enhancer singleton.
    Falls back to a NullEnhancer when AI is disabled or no key is configured.
    """
    global _client
    if _client is None:
        cfg = get_ai_config()
        if cfg.is_active:
            _client = AIClient(config=cfg)
        else:
            logger.info("AI disabled or no API key found, narratives use computed fallbacks")
            _client = NullEnhancer()
    return _client


def reset_ai_client():
    """Reset the enhancer singleton (useful for config changes)."""
    global _client
    _client = None
