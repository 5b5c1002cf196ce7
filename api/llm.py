import json
import logging
import os
import time
from typing import Any, Callable, Optional

from dotenv import load_dotenv

import google.genai as genai
from google.genai import types

try:
    from .retry import RetryPolicy, call_with_retry
except ImportError:
    from retry import RetryPolicy, call_with_retry  # type: ignore

load_dotenv()

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
MODEL_NAME = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
MAX_LLM_ATTEMPTS = 3


class LLMError(Exception):
    pass


class MalformedCompletionError(LLMError):
    """The model answered without calling the declared function."""


class LLMRequestError(LLMError):
    """The provider rejected the request itself (HTTP 400). Retrying cannot help."""


class LLMUnavailableError(LLMError):
    """No usable completion after every attempt."""


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("code", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable(exc: BaseException) -> bool:
    return _status_code(exc) != 400


LLM_RETRY_POLICY = RetryPolicy(
    max_attempts=MAX_LLM_ATTEMPTS,
    initial_delay=0.5,
    max_delay=2.0,
    is_retryable=is_retryable,
)


def build_genai_client() -> genai.Client:
    if GEMINI_API_KEY:
        return genai.Client(api_key=GEMINI_API_KEY)
    os.environ.setdefault("GOOGLE_CLOUD_PROJECT", os.getenv("GCP_PROJECT_ID", ""))
    os.environ.setdefault(
        "GOOGLE_CLOUD_LOCATION",
        os.getenv("GCP_GLOBAL_LOCATION") or os.getenv("GCP_LOCATION") or "global",
    )
    os.environ.setdefault("GOOGLE_GENAI_USE_VERTEXAI", "True")
    return genai.Client(http_options=types.HttpOptions(api_version="v1"))


def tool_arguments(response: Any, tool_name: str) -> str:
    calls = getattr(response, "function_calls", None) or []
    chosen = next((call for call in calls if getattr(call, "name", None) == tool_name), None)
    if chosen is None and calls:
        chosen = calls[0]
    if chosen is None:
        raise MalformedCompletionError("No tool call in model response")
    args = getattr(chosen, "args", None)
    if isinstance(args, str):
        return args
    if not isinstance(args, dict) or not args:
        raise MalformedCompletionError("Tool call arrived without arguments")
    return json.dumps(args, ensure_ascii=False)


class LLMClient:
    def __init__(
        self,
        client: Any = None,
        model: str = MODEL_NAME,
        retry: RetryPolicy = LLM_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        temperature: float = 0.7,
        max_output_tokens: int = 8192,
        client_factory: Callable[[], Any] = build_genai_client,
    ):
        self._client = client
        self._client_factory = client_factory
        self.model = model
        self.retry = retry
        self.sleep = sleep
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def complete_tool_call(self, system: str, user: str, tool: types.FunctionDeclaration) -> str:
        """Ask the model to call ``tool`` and return its arguments as a JSON string."""
        try:
            client = self.client
        except Exception as exc:
            logger.error("Gemini client could not be created: %s", exc)
            raise LLMUnavailableError(str(exc)) from exc

        config = types.GenerateContentConfig(
            system_instruction=system,
            tools=[types.Tool(function_declarations=[tool])],
            tool_config=types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(
                    mode="ANY",
                    allowed_function_names=[tool.name],
                )
            ),
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )

        def attempt() -> str:
            response = client.models.generate_content(
                model=self.model,
                contents=[types.Content(role="user", parts=[types.Part.from_text(text=user)])],
                config=config,
            )
            return tool_arguments(response, tool.name)

        try:
            return call_with_retry(attempt, self.retry, sleep=self.sleep, label="gemini")
        except Exception as exc:
            if not self.retry.is_retryable(exc):
                raise LLMRequestError(str(exc)) from exc
            raise LLMUnavailableError(str(exc)) from exc
