import logging
import time
from typing import Any, Dict, List, Optional, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from openai import APIError, APITimeoutError, OpenAIError, RateLimitError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from therapy_chat.core.config import Environment, settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import QuotaExceededError
from therapy_chat.core.metrics import llm_inference_duration_seconds

logger = get_logger(__name__)

_TRANSIENT_ERRORS = (RateLimitError, APITimeoutError, APIError)


def is_quota_error(error: BaseException) -> bool:
    """OpenAI reports an exhausted billing quota as a 429 with code `insufficient_quota`."""
    return getattr(error, "code", None) == "insufficient_quota"


def _should_retry(error: BaseException) -> bool:
    return isinstance(error, _TRANSIENT_ERRORS) and not is_quota_error(error)


# ==================================================
# LLM Registry
# ==================================================
class LLMRegistry:
    """
    Registry of available LLM models.
    Chat replies, summaries and emotion tagging each pick a model by name.
    """

    LLMS: List[Dict[str, Any]] = [
        {
            "name": "gpt-4o-mini",
            "llm": ChatOpenAI(
                model="gpt-4o-mini",
                temperature=settings.DEFAULT_LLM_TEMPERATURE,
                api_key=settings.OPENAI_API_KEY or "unset",
                max_tokens=settings.MAX_TOKENS,
                top_p=0.95 if settings.ENVIRONMENT == Environment.PRODUCTION else 0.8,
            ),
        },
        {
            "name": "gpt-4o",
            "llm": ChatOpenAI(
                model="gpt-4o",
                temperature=settings.DEFAULT_LLM_TEMPERATURE,
                api_key=settings.OPENAI_API_KEY or "unset",
                max_tokens=settings.MAX_TOKENS,
            ),
        },
    ]

    @classmethod
    def get(cls, model_name: str, **kwargs) -> BaseChatModel:
        """Retrieve a specific model instance by name."""
        model_entry = next((entry for entry in cls.LLMS if entry["name"] == model_name), None)
        if not model_entry:
            available_models = [entry["name"] for entry in cls.LLMS]
            raise ValueError(
                f"model '{model_name}' not found in registry. available models: {', '.join(available_models)}"
            )

        # Custom kwargs (e.g. temperature for tagging) get a dedicated instance
        if kwargs:
            logger.debug("creating_llm_with_custom_args", model_name=model_name, custom_args=list(kwargs.keys()))
            return ChatOpenAI(model=model_name, api_key=settings.OPENAI_API_KEY or "unset", **kwargs)

        return model_entry["llm"]

    @classmethod
    def get_all_names(cls) -> List[str]:
        return [entry["name"] for entry in cls.LLMS]

    @classmethod
    def index_of(cls, model_name: str) -> int:
        names = cls.get_all_names()
        return names.index(model_name) if model_name in names else 0


# ==================================================
# LLM Service
# ==================================================
class LLMService:
    """
    Manages LLM calls with automatic retries and fallback to the next model.
    An exhausted quota is not retried; it surfaces as `QuotaExceededError`.
    """

    def __init__(self):
        self._current_model_index = LLMRegistry.index_of(settings.DEFAULT_LLM_MODEL)
        logger.info(
            "llm_service_initialized",
            default_model=settings.DEFAULT_LLM_MODEL,
            model_index=self._current_model_index,
            total_models=len(LLMRegistry.LLMS),
            environment=settings.ENVIRONMENT.value,
        )

    @retry(
        stop=stop_after_attempt(settings.MAX_LLM_CALL_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_should_retry),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _call_with_retry(
        self, llm: BaseChatModel, model_name: str, messages: Union[List[BaseMessage], List[dict]]
    ) -> BaseMessage:
        """Internal method that executes the actual API call."""
        start = time.perf_counter()
        try:
            response = await llm.ainvoke(messages)
            logger.debug("llm_call_successful", model=model_name, message_count=len(messages))
            return response
        except OpenAIError as e:
            logger.warning("llm_call_failed", model=model_name, error_type=type(e).__name__, error=str(e))
            raise
        finally:
            llm_inference_duration_seconds.labels(model=model_name).observe(time.perf_counter() - start)

    async def call(
        self,
        messages: List[BaseMessage],
        model_name: Optional[str] = None,
        **model_kwargs,
    ) -> BaseMessage:
        """Call the LLM, falling back through the registry when a model keeps failing.

        Raises:
            QuotaExceededError: the account has no quota left
            RuntimeError: every model failed after retries
        """
        names = LLMRegistry.get_all_names()
        start_index = LLMRegistry.index_of(model_name) if model_name else self._current_model_index
        last_error: Optional[Exception] = None

        for offset in range(len(names)):
            index = (start_index + offset) % len(names)
            name = names[index]
            llm = LLMRegistry.get(name, **model_kwargs)
            try:
                response = await self._call_with_retry(llm, name, messages)
                if not model_name:
                    self._current_model_index = index
                return response
            except OpenAIError as e:
                if is_quota_error(e):
                    logger.error("llm_quota_exceeded", model=name)
                    raise QuotaExceededError() from e
                last_error = e
                logger.error(
                    "llm_call_failed_after_retries",
                    model=name,
                    models_tried=offset + 1,
                    total_models=len(names),
                    error=str(e),
                )

        logger.error("all_models_failed", starting_model=names[start_index])
        raise RuntimeError(
            f"failed to get response from llm after trying {len(names)} models. last error: {last_error}"
        )

    async def complete(self, messages: List[BaseMessage], model_name: Optional[str] = None, **model_kwargs) -> str:
        """Convenience wrapper returning the reply text."""
        response = await self.call(messages, model_name=model_name, **model_kwargs)
        return str(response.content or "").strip()


llm_service = LLMService()
