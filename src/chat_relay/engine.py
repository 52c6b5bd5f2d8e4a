"""Agent engines: turn a conversation history into an async stream of fragments."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

History = Sequence[Dict[str, str]]


class EngineError(RuntimeError):
    """The engine could not produce a reply."""


class AgentEngine(Protocol):
    """Anything with an ``invoke`` that streams content fragments.

    ``invoke`` receives the full ordered session history, latest user message
    last, and returns an async iterator of text fragments. Raising from the
    iterator signals failure; exhausting it signals completion.
    """

    def invoke(self, history: History) -> AsyncIterator[str]:
        ...


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


# -----------------------------
# Echo engine
# -----------------------------

class EchoEngine:
    """Development engine: streams a canned reply word by word."""

    def __init__(self, delay: float = 0.02, prefix: str = "You said: ") -> None:
        self.delay = max(0.0, float(delay))
        self.prefix = prefix

    async def invoke(self, history: History) -> AsyncIterator[str]:
        last = next((m["content"] for m in reversed(history) if m.get("role") == "user"), "")
        words = f"{self.prefix}{last}".split(" ")
        for i, word in enumerate(words):
            yield word + (" " if i < len(words) - 1 else "")
            if self.delay:
                await asyncio.sleep(self.delay)


# -----------------------------
# GGUF engine (llama.cpp)
# -----------------------------

@dataclass
class Sampling:
    max_new_tokens: int = 256
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 50
    repeat_penalty: float = 1.1


_DONE = object()


class GGUFEngine:
    """Streams chat completions from a local GGUF model.

    llama.cpp generation is blocking, so it runs on a worker thread and hands
    tokens to the event loop through an :class:`asyncio.Queue`. Closing the
    iterator (e.g. the socket went away) sets a stop flag the worker checks
    between tokens.
    """

    def __init__(
        self,
        model_path: str,
        *,
        system_prompt: str = "",
        sampling: Optional[Sampling] = None,
        **kwargs: Any,
    ) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        kwargs : Any
            Passed to llama_cpp.Llama with some defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        # Lazy import so the relay runs without the optional dep.
        try:
            from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore
        except ImportError as e:
            raise EngineError("llama-cpp-python is not installed; install the 'llm' extra") from e

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise EngineError(f"Failed to load model {model_path}: {e}") from e
            # Retry without mmap on network filesystems / Windows oddities.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            llama = Llama(model_path=model_path, **kwargs)

        self._setup(llama, system_prompt, sampling)

    @classmethod
    def from_llama(cls, llama: Any, *, system_prompt: str = "", sampling: Optional[Sampling] = None) -> "GGUFEngine":
        """Wrap an already constructed ``llama_cpp.Llama`` (or compatible) object."""
        engine = cls.__new__(cls)
        engine._setup(llama, system_prompt, sampling)
        return engine

    def _setup(self, llama: Any, system_prompt: str, sampling: Optional[Sampling]) -> None:
        self._llama = llama
        self.system_prompt = system_prompt.strip()
        self.sampling = sampling or Sampling()
        # llama_cpp.Llama is not thread-safe: one generation at a time per model.
        self._generate_lock = threading.Lock()

    def _build_messages(self, history: History) -> List[Dict[str, str]]:
        msgs: List[Dict[str, str]] = []
        if self.system_prompt:
            msgs.append({"role": "system", "content": self.system_prompt})
        for m in history:
            if m.get("content"):
                msgs.append({"role": m["role"], "content": m["content"]})
        return msgs

    def _generate(self, messages: List[Dict[str, str]], emit, stop: threading.Event) -> None:
        s = self.sampling
        stream = self._llama.create_chat_completion(
            messages=messages,
            max_tokens=s.max_new_tokens,
            temperature=s.temperature,
            top_p=s.top_p,
            top_k=s.top_k,
            repeat_penalty=s.repeat_penalty,
            stream=True,
        )
        for part in stream:
            if stop.is_set():
                break
            delta = (part.get("choices") or [{}])[0].get("delta") or {}
            token = delta.get("content")
            if token:
                emit(token)

    async def invoke(self, history: History) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        messages = self._build_messages(history)

        def emit(item: Any) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, item)

        def worker() -> None:
            try:
                with self._generate_lock:
                    if not stop.is_set():
                        self._generate(messages, emit, stop)
            except Exception as e:  # handed over to the event loop
                emit(e)
            finally:
                emit(_DONE)

        thread = threading.Thread(target=worker, name="gguf-generate", daemon=True)
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    return
                if isinstance(item, Exception):
                    raise EngineError(f"Generation failed: {item}") from item
                yield item
        finally:
            stop.set()


# -----------------------------
# Convenience factory
# -----------------------------

def create_engine(cfg: Dict[str, Any]) -> AgentEngine:
    """Create the engine named by ``engine.kind`` in a config dict."""
    eng_cfg = (cfg or {}).get("engine", {}) if isinstance(cfg, dict) else {}
    kind = str(eng_cfg.get("kind", "echo")).lower()

    if kind == "echo":
        echo_cfg = eng_cfg.get("echo") or {}
        return EchoEngine(delay=float(echo_cfg.get("delay", 0.02)))

    if kind == "gguf":
        model_cfg = eng_cfg.get("model") or {}
        model_dir = model_cfg.get("model_dir")
        model_path = model_cfg.get("model_path")
        if model_dir and model_path and not os.path.isabs(model_path):
            model_path = os.path.join(model_dir, model_path)
        if not model_path or not os.path.exists(model_path):
            raise FileNotFoundError(f"Model not found at: {model_path!r}")

        sampling = Sampling(
            max_new_tokens=int(model_cfg.get("max_new_tokens", 256)),
            temperature=float(model_cfg.get("temperature", 0.7)),
            top_p=float(model_cfg.get("top_p", 0.95)),
            top_k=int(model_cfg.get("top_k", 50)),
            repeat_penalty=float(model_cfg.get("repeat_penalty", 1.1)),
        )
        params = {
            "n_ctx": model_cfg.get("n_ctx", 4096),
            "n_threads": model_cfg.get("n_threads"),
            "n_gpu_layers": model_cfg.get("n_gpu_layers"),
            "use_mmap": model_cfg.get("use_mmap", True),
        }
        # Remove None entries (llama.cpp is picky)
        params = {k: v for k, v in params.items() if v is not None}
        return GGUFEngine(
            model_path,
            system_prompt=str(eng_cfg.get("system_prompt") or ""),
            sampling=sampling,
            **params,
        )

    raise ValueError(f"Unknown engine kind: {kind!r}")
