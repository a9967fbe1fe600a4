"""Chat-completion gateway: hosted HTTP providers and local GGUF weights."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .memory import Message

logger = logging.getLogger(__name__)

DEFAULT_WORKERS_AI_MODEL = "@cf/meta/llama-3.3-70b-instruct-fp8-fast"
DEFAULT_WORKERS_AI_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_TIMEOUT = 60.0


class InferenceError(RuntimeError):
    """Raised when the provider fails or answers with something unusable."""


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.95

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GenerationConfig":
        data = data or {}
        base = cls()
        return cls(
            max_new_tokens=int(data.get("max_new_tokens", base.max_new_tokens)),
            temperature=float(data.get("temperature", base.temperature)),
            top_p=float(data.get("top_p", base.top_p)),
        )


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def build_messages(system_prompt: str, history: Iterable[Message]) -> List[Dict[str, str]]:
    """Prepend the system prompt to the stored conversation."""
    msgs: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    msgs.extend(m.to_dict() for m in history)
    return msgs


def generate_reply(model: Any, system_prompt: str, history: Iterable[Message]) -> str:
    """Run one completion for ``history`` and return the assistant text.

    ``model`` is any object exposing ``chat(messages) -> str``.
    """
    reply = model.chat(build_messages(system_prompt, history))
    if not isinstance(reply, str):
        raise InferenceError(f"Model returned {type(reply).__name__}, expected text.")
    return reply


# -----------------------------
# HTTP providers
# -----------------------------

class _HTTPChatModel:
    """Shared plumbing for JSON chat endpoints reached over :mod:`httpx`."""

    provider = "http"

    def __init__(
        self,
        *,
        model: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        generation: Optional[GenerationConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.model = model
        self.generation = generation or GenerationConfig()
        self._client = httpx.Client(
            headers=headers or {},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise InferenceError(f"{self.provider} request failed: {e}") from e
        if resp.status_code >= 400:
            raise InferenceError(
                f"{self.provider} returned HTTP {resp.status_code}: {resp.text[:500]}"
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise InferenceError(f"{self.provider} returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InferenceError(f"{self.provider} returned unexpected payload.")
        return data


class WorkersAIModel(_HTTPChatModel):
    """Cloudflare Workers AI ``/ai/run/{model}`` endpoint."""

    provider = "workers_ai"

    def __init__(
        self,
        account_id: str,
        api_token: str,
        *,
        model: str = DEFAULT_WORKERS_AI_MODEL,
        base_url: str = DEFAULT_WORKERS_AI_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            model=model,
            headers={"Authorization": f"Bearer {api_token}"},
            **kwargs,
        )
        self.url = f"{base_url.rstrip('/')}/accounts/{account_id}/ai/run/{model}"

    def chat(self, messages: List[Dict[str, str]]) -> str:
        data = self._post(
            self.url,
            {
                "messages": messages,
                "max_tokens": self.generation.max_new_tokens,
                "temperature": self.generation.temperature,
                "top_p": self.generation.top_p,
            },
        )
        if data.get("success") is False:
            raise InferenceError(f"workers_ai error: {data.get('errors') or 'unknown error'}")
        result = data.get("result")
        text = result.get("response") if isinstance(result, dict) else None
        if not isinstance(text, str):
            raise InferenceError("workers_ai response did not contain result.response")
        return text


class OpenAICompatibleModel(_HTTPChatModel):
    """Any server speaking the OpenAI ``/chat/completions`` dialect."""

    provider = "openai"

    def __init__(
        self,
        base_url: str,
        *,
        model: str,
        api_key: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        super().__init__(model=model, headers=headers, **kwargs)
        self.url = f"{base_url.rstrip('/')}/chat/completions"

    def chat(self, messages: List[Dict[str, str]]) -> str:
        data = self._post(
            self.url,
            {
                "model": self.model,
                "messages": messages,
                "max_tokens": self.generation.max_new_tokens,
                "temperature": self.generation.temperature,
                "top_p": self.generation.top_p,
                "stream": False,
            },
        )
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise InferenceError(f"openai response missing choices[0].message.content: {e}") from e
        if not isinstance(text, str):
            raise InferenceError("openai response content is not text")
        return text


# -----------------------------
# GGUF wrapper
# -----------------------------

class GGUFModel:
    """Thin wrapper around :mod:`llama_cpp` for local chat completion."""

    provider = "llama_cpp"

    def __init__(self, model_path: str, *, generation: Optional[GenerationConfig] = None, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        kwargs : Any
            Passed to llama_cpp.Llama with some defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: all layers if gpu offload is supported; else 0
              - use_mmap: default True, retried without mmap on OSError
        """
        # Lazy import so the server runs without the optional dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError:
            if not use_mmap:
                raise
            # Network filesystems sometimes refuse memory-mapping.
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

        self.model = os.path.basename(model_path)
        self.generation = generation or GenerationConfig()

    def chat(self, messages: List[Dict[str, str]]) -> str:
        try:
            result = self._llama.create_chat_completion(
                messages=messages,
                max_tokens=self.generation.max_new_tokens,
                temperature=self.generation.temperature,
                top_p=self.generation.top_p,
            )
            return result["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError, ValueError, RuntimeError) as e:
            raise InferenceError(f"llama_cpp generation failed: {e}") from e


# -----------------------------
# Convenience factory
# -----------------------------

def _require(value: Any, name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"Missing model setting: {name}")
    return str(value).strip()


def create_from_config(cfg: Dict[str, Any]) -> Any:
    """Create the configured chat model from a config dict (e.g., loaded YAML)."""
    cfg = cfg if isinstance(cfg, dict) else {}
    model_cfg = cfg.get("model", {}) or {}
    generation = GenerationConfig.from_dict(cfg.get("generation"))
    provider = str(model_cfg.get("provider", "workers_ai")).strip().lower()
    timeout = float(model_cfg.get("timeout", DEFAULT_TIMEOUT))

    if provider == "workers_ai":
        account_id = model_cfg.get("account_id") or os.environ.get("CLOUDFLARE_ACCOUNT_ID")
        api_token = model_cfg.get("api_token") or os.environ.get("CLOUDFLARE_API_TOKEN")
        return WorkersAIModel(
            _require(account_id, "model.account_id (or CLOUDFLARE_ACCOUNT_ID)"),
            _require(api_token, "model.api_token (or CLOUDFLARE_API_TOKEN)"),
            model=str(model_cfg.get("name") or DEFAULT_WORKERS_AI_MODEL),
            base_url=str(model_cfg.get("base_url") or DEFAULT_WORKERS_AI_URL),
            timeout=timeout,
            generation=generation,
        )

    if provider == "openai":
        return OpenAICompatibleModel(
            _require(model_cfg.get("base_url"), "model.base_url"),
            model=_require(model_cfg.get("name"), "model.name"),
            api_key=model_cfg.get("api_key") or os.environ.get("OPENAI_API_KEY"),
            timeout=timeout,
            generation=generation,
        )

    if provider == "llama_cpp":
        model_dir = model_cfg.get("model_dir")
        model_path = _require(model_cfg.get("model_path"), "model.model_path")
        if model_dir and not os.path.isabs(model_path):
            model_path = os.path.join(str(model_dir), model_path)
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Model not found at: {model_path!r}")
        params = {
            "n_ctx": model_cfg.get("n_ctx", 4096),
            "n_threads": model_cfg.get("n_threads"),
            "n_gpu_layers": model_cfg.get("n_gpu_layers"),
            "use_mmap": model_cfg.get("use_mmap", True),
        }
        # llama.cpp is picky about None
        params = {k: v for k, v in params.items() if v is not None}
        return GGUFModel(model_path, generation=generation, **params)

    raise ValueError(f"Unknown model provider: {provider!r}")
