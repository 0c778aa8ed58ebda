import asyncio
import logging
import threading
import random
import time
import traceback
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from openai import OpenAI
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.messages import HumanMessage
from langchain_google_vertexai import VertexAI

from sibflo.errors import MaxRetryErrorsException, NotInitializedError
from sibflo.model_props import (
    GENERATION,
    TIER_NAMES,
    available_models,
    estimate_cost_usd,
    get_tier_spec,
    parse_model_name,
)

logger = logging.getLogger("sibflo_backend")

T = TypeVar("T")

OnChunk = Callable[[str, str], None]

# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 1,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run one blocking model call, retrying up to `retries` times. Rate-limited or
    timed-out attempts push every tier back through one shared backoff window.
    """
    last_exception: Exception | None = None
    retries = max(1, int(retries))

    def _is_timeout_error(e: Exception) -> bool:
        if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
            return True
        msg = repr(e)
        return "TimeoutError" in msg or "timed out" in msg.lower()

    def _is_rate_limited_error(e: Exception) -> bool:
        msg = str(e)
        return (
            "429" in msg
            and (
                "RESOURCE_EXHAUSTED" in msg
                or "Resource has been exhausted" in msg
                or "Too Many Requests" in msg
            )
        )

    def _respect_global_backoff() -> None:
        while True:
            with _global_backoff_lock:
                wait = _global_wait_until - time.monotonic()
            if wait <= 0:
                return
            time.sleep(min(wait, 1.0))

    def _register_throttle_and_get_delay() -> float:
        global _global_wait_until, _global_backoff_seconds

        with _global_backoff_lock:
            now = time.monotonic()
            base = _global_backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
            _global_wait_until = max(_global_wait_until, now + delay)
            return delay

    def _reset_backoff_on_success() -> None:
        global _global_backoff_seconds
        with _global_backoff_lock:
            _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            # only back off globally when another attempt follows
            if attempt + 1 < retries and (_is_rate_limited_error(e) or _is_timeout_error(e)):
                delay = _register_throttle_and_get_delay()
                msg = f"Attempt {attempt+1} was rate-limited or timed out, all tiers back off ~{delay:.1f}s."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

    if retries == 1 and last_exception is not None:
        raise last_exception
    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class BaseLlmClient:
    """
    Usage accounting shared by all providers. Token counts and the estimated
    cost accumulate across calls until reset_usage().
    """

    model_name: str
    last_usage: Optional[Dict[str, float]]

    def _merge_usage_counts(self, prompt_tokens: int, completion_tokens: int, total_tokens: int = 0) -> None:
        inc = {
            "prompt_token_count": int(prompt_tokens or 0),
            "candidates_token_count": int(completion_tokens or 0),
            "total_token_count": int(total_tokens or (prompt_tokens or 0) + (completion_tokens or 0)),
            "accrued_cost": estimate_cost_usd(
                llm_model_name=self.model_name,
                prompt_tokens=int(prompt_tokens or 0),
                completion_tokens=int(completion_tokens or 0),
                service_tier=getattr(self, "_service_tier", None),
            ),
        }
        if self.last_usage is None:
            self.last_usage = inc
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_openai_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None) if resp is not None else None
        if usage is None:
            return
        self._merge_usage_counts(
            getattr(usage, "input_tokens", 0) or 0,
            getattr(usage, "output_tokens", 0) or 0,
            getattr(usage, "total_tokens", 0) or 0,
        )

    def _merge_langchain_usage(self, resp: Any) -> None:
        """
        LangChain messages carry usage either as standard `usage_metadata`
        (input_tokens/output_tokens) or as Google's raw counters in response_metadata.
        """
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            rm = getattr(resp, "response_metadata", None)
            if isinstance(rm, dict):
                usage_md = rm.get("usage_metadata")
        if not usage_md:
            return

        def get(*keys: str) -> int:
            for k in keys:
                v = usage_md.get(k) if isinstance(usage_md, dict) else getattr(usage_md, k, None)
                if v:
                    return int(v)
            return 0

        self._merge_usage_counts(
            get("input_tokens", "prompt_token_count"),
            get("output_tokens", "candidates_token_count"),
            get("total_tokens", "total_token_count"),
        )

    def get_accrued_cost(self) -> float:
        if not self.last_usage:
            return 0.0
        return float(self.last_usage.get("accrued_cost", 0.0))

    def get_accrued_usage(self) -> Dict[str, float]:
        return dict(self.last_usage or {})

    def reset_usage(self) -> None:
        self.last_usage = None


def _content_to_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content)


class LlmClient(BaseLlmClient):
    """
    Completion-style wrapper for one model tier:

        text = llm.invoke("some prompt")
        for piece in llm.iter_stream("some prompt"): ...

    Under the hood:
    - gemini: ChatGoogleGenerativeAI with an API key
    - openai: Responses API (client.responses.create)
    - vertex: VertexAI with ambient Google credentials
    """

    def __init__(
        self,
        tier: str,
        tier_spec: Dict[str, Any],
        *,
        credential: str | None = None,
        vertex_project: str | None = None,
        vertex_region: str | None = None,
    ):
        self.tier = tier
        self.provider = tier_spec.get("provider", "gemini")
        self.model_name = tier_spec["model_name"]
        self.max_tokens = tier_spec.get("max_tokens")
        self.temperature = tier_spec.get("temperature")
        self._timeout = tier_spec.get("timeout")
        self.last_usage: Optional[Dict[str, float]] = None
        self._openai_params: Dict[str, Any] = {}
        self._service_tier = None
        self._llm = None
        self._client = None

        if self.provider == "gemini":
            if not credential:
                raise NotInitializedError(f"Tier '{tier}' needs an API key for provider gemini")
            self._llm = ChatGoogleGenerativeAI(
                model=self.model_name,
                google_api_key=credential,
                temperature=self.temperature,
                max_output_tokens=self.max_tokens,
                timeout=self._timeout,
                max_retries=0,
            )
        elif self.provider == "vertex":
            self._llm = VertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=self.model_name,
                temperature=self.temperature,
                max_output_tokens=self.max_tokens,
                timeout=self._timeout,
            )
        elif self.provider == "openai":
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            self._service_tier = self._openai_params.get("service_tier")
            if self.max_tokens:
                self._openai_params["max_output_tokens"] = self.max_tokens
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if credential:
                client_kwargs["api_key"] = credential
            if self._timeout is not None:
                client_kwargs["timeout"] = self._timeout
            self._client = OpenAI(**client_kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider}")

    def _llm_input(self, prompt: str):
        # chat models take a message list, VertexAI a plain completion prompt
        if self.provider == "gemini":
            return [HumanMessage(content=prompt)]
        return prompt

    def _invoke_once(self, prompt: str) -> str:
        """
        Single HTTP call without retries/backoff.
        """
        if self._client is None:
            resp = self._llm.invoke(self._llm_input(prompt))
            if isinstance(resp, str):
                return resp
            self._merge_langchain_usage(resp)
            return _content_to_text(getattr(resp, "content", resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=prompt,
            **self._openai_params,
        )
        self._merge_openai_usage(resp)
        text = getattr(resp, "output_text", "") or ""
        return text.strip()

    def invoke(self, prompt: str, *, retries: int = 1) -> str:
        """
        Blocking call through call_with_retries_sync.
        """
        return call_with_retries_sync(
            lambda: self._invoke_once(prompt),
            retries=retries,
            log=lambda msg: logger.warning(f"[LLM-RETRY:{self.tier}] {msg}"),
        )

    def iter_stream(self, prompt: str) -> Iterator[str]:
        """
        Yields text pieces as the provider produces them. No retries: pieces
        already handed out cannot be taken back.
        """
        if self._client is None:
            for chunk in self._llm.stream(self._llm_input(prompt)):
                if isinstance(chunk, str):
                    text = chunk
                else:
                    self._merge_langchain_usage(chunk)
                    text = _content_to_text(getattr(chunk, "content", chunk))
                if text:
                    yield text
            return

        events = self._client.responses.create(
            model=self.model_name,
            input=prompt,
            stream=True,
            **self._openai_params,
        )
        for event in events:
            event_type = getattr(event, "type", "")
            if event_type == "response.output_text.delta":
                delta = getattr(event, "delta", "") or ""
                if delta:
                    yield delta
            elif event_type == "response.completed":
                self._merge_openai_usage(getattr(event, "response", None))


ClientFactory = Callable[[str, Dict[str, Any], Optional[str]], Any]


def default_client_factory(tier: str, tier_spec: Dict[str, Any], credential: str | None) -> LlmClient:
    from sibflo.google_helpers import get_vertex_location

    project, region = get_vertex_location()
    return LlmClient(
        tier,
        tier_spec,
        credential=credential,
        vertex_project=project,
        vertex_region=region,
    )


def mask_key(key: str | None) -> str | None:
    if not key:
        return None
    if len(key) > 8:
        return f"{key[:4]}...{key[-4:]}"
    return "****"


class ModelGateway:
    """
    The three model tiers behind one async interface.

        gateway.configure(api_key)
        text = await gateway.invoke("lite", prompt)
        text = await gateway.invoke_streaming("pro", prompt, on_chunk)

    Nothing works before configure(): every call raises NotInitializedError.
    configure() builds a full new set of tier clients and swaps them in at once,
    so a credential rotation never leaves a mix of old and new clients.
    """

    def __init__(self, client_factory: ClientFactory | None = None, retries: int | None = None):
        self._client_factory = client_factory or default_client_factory
        self.retries = int(retries if retries is not None else GENERATION["llm_retries"])
        self._lock = threading.Lock()
        self._clients: Dict[str, Any] = {}
        self._credential: str | None = None

    def configure(self, credential: str | None = None) -> None:
        if credential is None:
            from sibflo.google_helpers import get_llm_credential
            credential = get_llm_credential()
        clients = {
            tier: self._client_factory(tier, get_tier_spec(tier), credential)
            for tier in TIER_NAMES
        }
        with self._lock:
            self._clients = clients
            self._credential = credential
        logger.info(f"ModelGateway: configured tiers {', '.join(TIER_NAMES)}")

    def clear(self) -> None:
        with self._lock:
            self._clients = {}
            self._credential = None

    @property
    def is_configured(self) -> bool:
        return bool(self._clients)

    def api_key_status(self) -> Dict[str, Any]:
        return {"is_set": bool(self._credential), "masked_key": mask_key(self._credential)}

    def available_models(self) -> list[Dict[str, Any]]:
        return available_models()

    def tier(self, name: str):
        with self._lock:
            clients = self._clients
        if not clients:
            raise NotInitializedError("Model gateway is not configured. Set an API key first.")
        client = clients.get(name)
        if client is None:
            raise ValueError(f"Unknown model tier: {name}")
        return client

    async def invoke(self, tier: str, prompt: str) -> str:
        client = self.tier(tier)
        return await asyncio.to_thread(client.invoke, prompt, retries=self.retries)

    async def invoke_streaming(self, tier: str, prompt: str, on_chunk: OnChunk | None = None) -> str:
        """
        Streams one completion. on_chunk(chunk, full_text_so_far) runs on the
        event loop after each piece; the full text is returned at the end.
        """
        client = self.tier(tier)
        iterator = await asyncio.to_thread(client.iter_stream, prompt)
        done = object()
        full_text = ""
        while True:
            piece = await asyncio.to_thread(next, iterator, done)
            if piece is done:
                break
            full_text += piece
            if on_chunk is not None:
                on_chunk(piece, full_text)
        return full_text

    def usage_summary(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            clients = dict(self._clients)
        out = {}
        for tier, client in clients.items():
            getter = getattr(client, "get_accrued_usage", None)
            out[tier] = getter() if getter else {}
        return out
