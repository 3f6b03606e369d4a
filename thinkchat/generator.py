"""
Generation control loop.

This module provides the session controller that:
- Resolves the model on first use
- Runs one generation at a time on a background worker
- Publishes decoded partial output every few tokens
- Stops at the configured token budget and reports throughput
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Sequence

from .config import config
from .errors import GenerationError, GenerationErrorKind
from .model_loader import LoadState, ModelHandle, ModelResolver

logger = logging.getLogger(__name__)


class Continuation(str, Enum):
    MORE = "more"
    STOP = "stop"


class GenerationEngine(Protocol):
    def seed(self, value: int) -> None: ...

    def generate(
        self,
        input_ids: List[int],
        parameters: "GenerateParameters",
        handle: ModelHandle,
        on_partial: Callable[[Sequence[int]], Continuation],
    ) -> "EngineOutput": ...


@dataclass
class GenerateParameters:
    temperature: float = 0.0
    top_p: float = 1.0


@dataclass
class EngineOutput:
    output_text: str
    tokens_per_second: float = 0.0


@dataclass
class GenerationResult:
    """Outcome of one generate call."""

    final_text: str
    tokens_per_second: float = 0.0
    token_count: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SessionState:
    """Observable session fields, written only by the owning thread."""

    running: bool = False
    output: str = ""
    model_info: str = ""
    stat: str = ""
    load_state: LoadState = field(default_factory=LoadState.idle)


@dataclass(frozen=True)
class SessionUpdate:
    """A field change posted from the worker to the owning thread."""

    field: str
    value: Any


class ContinuationPredicate:
    """
    Per-token decision for the engine loop.

    Every `display_every` tokens the partial sequence is decoded and handed
    to `publish`. Returns STOP once the token count reaches `max_tokens`.
    """

    def __init__(
        self,
        max_tokens: int,
        display_every: int,
        decode: Callable[[Sequence[int]], str],
        publish: Callable[[str], None],
    ):
        self.max_tokens = max_tokens
        self.display_every = max(1, display_every)
        self.decode = decode
        self.publish = publish
        self.token_count = 0

    def __call__(self, tokens: Sequence[int]) -> Continuation:
        self.token_count = len(tokens)
        if self.token_count % self.display_every == 0:
            self.publish(self.decode(tokens))
        return Continuation.STOP if self.token_count >= self.max_tokens else Continuation.MORE


class GenerationController:
    """Single-flight generation session bound to one model identity."""

    def __init__(
        self,
        resolver: ModelResolver,
        engine: GenerationEngine,
        model_id: Optional[str] = None,
        max_tokens: int = 240,
        display_every_n_tokens: Optional[int] = None,
        parameters: Optional[GenerateParameters] = None,
    ):
        """
        Initialize the controller.

        Args:
            resolver: Resolves the model identity into a loaded handle
            engine: Runs token-by-token generation against a handle
            model_id: Model identity (default: config.MODEL_ID)
            max_tokens: Token budget per generate call
            display_every_n_tokens: Partial output cadence (default: config.DISPLAY_EVERY_N_TOKENS)
            parameters: Sampling parameters (default: config TEMPERATURE/TOP_P)
        """
        self.resolver = resolver
        self.engine = engine
        self.model_id = model_id or config.MODEL_ID
        self.max_tokens = max_tokens
        self.display_every_n_tokens = display_every_n_tokens or config.DISPLAY_EVERY_N_TOKENS
        self.parameters = parameters or GenerateParameters(
            temperature=config.TEMPERATURE, top_p=config.TOP_P
        )
        self.state = SessionState()
        self._listeners: List[Callable[[str, Any], None]] = []

    @property
    def running(self) -> bool:
        return self.state.running

    @property
    def output(self) -> str:
        return self.state.output

    def add_listener(self, callback: Callable[[str, Any], None]):
        """Register callback(field, value), called on the owning thread after each change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[str, Any], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _apply(self, field_name: str, value: Any):
        setattr(self.state, field_name, value)
        for listener in list(self._listeners):
            try:
                listener(field_name, value)
            except Exception:
                logger.exception(f"Listener failed on {field_name} update")

    def load(self) -> ModelHandle:
        """Resolve the model on the calling thread, publishing status as it goes."""
        handle = self.resolver.resolve(
            self.model_id, on_status=lambda s: self._apply("model_info", s)
        )
        self._apply("load_state", LoadState.loaded(handle))
        return handle

    def generate(self, prompt: str) -> Optional[GenerationResult]:
        """
        Generate a completion for prompt, streaming partial output to listeners.

        Must be called from the thread that owns this controller. Returns None
        without touching the session if a generation is already running.
        """
        if self.state.running:
            logger.debug("Generation already running, ignoring request")
            return None

        try:
            self._apply("running", True)
            self._apply("output", "")
            return self._run(prompt)
        except Exception as e:
            logger.error(f"Generation failed: {e}")
            self._apply("output", f"Failed: {e}")
            return GenerationResult(final_text=self.state.output, error=e)
        finally:
            self._apply("running", False)

    def _run(self, prompt: str) -> GenerationResult:
        updates: "queue.Queue[SessionUpdate]" = queue.Queue()
        worker = threading.Thread(
            target=self._work, args=(prompt, updates), name="generation-worker", daemon=True
        )
        worker.start()

        try:
            while True:
                update = updates.get()
                if update.field == "error":
                    raise update.value
                if update.field == "done":
                    return self._finish(update.value)
                self._apply(update.field, update.value)
        finally:
            worker.join()

    def _work(self, prompt: str, updates: "queue.Queue[SessionUpdate]"):
        """Worker body. Never touches session state, only posts updates."""
        try:
            handle = self.resolver.resolve(
                self.model_id, on_status=lambda s: updates.put(SessionUpdate("model_info", s))
            )
            updates.put(SessionUpdate("load_state", LoadState.loaded(handle)))

            self.engine.seed(int(time.time() * 1000))

            try:
                input_ids = handle.processor.prepare(prompt)
            except Exception as e:
                raise GenerationError(GenerationErrorKind.INPUT_PREP_FAILED, str(e)) from e

            predicate = ContinuationPredicate(
                max_tokens=self.max_tokens,
                display_every=self.display_every_n_tokens,
                decode=handle.tokenizer.decode,
                publish=lambda text: updates.put(SessionUpdate("output", text)),
            )

            start = time.perf_counter()
            try:
                output = self.engine.generate(input_ids, self.parameters, handle, predicate)
            except GenerationError:
                raise
            except Exception as e:
                raise GenerationError(GenerationErrorKind.ENGINE_FAILURE, str(e)) from e
            elapsed = time.perf_counter() - start

            tokens_per_second = predicate.token_count / elapsed if elapsed > 0 else 0.0
            logger.debug(
                f"Generated {predicate.token_count} tokens in {elapsed:.2f}s "
                f"(engine reported {output.tokens_per_second:.3f} tokens/s)"
            )
            updates.put(
                SessionUpdate(
                    "done",
                    GenerationResult(
                        final_text=output.output_text,
                        tokens_per_second=tokens_per_second,
                        token_count=predicate.token_count,
                    ),
                )
            )
        except Exception as e:
            updates.put(SessionUpdate("error", e))

    def _finish(self, result: GenerationResult) -> GenerationResult:
        # String equality only: a re-decode with different whitespace also
        # counts as a mismatch and overwrites the last partial.
        if result.final_text != self.state.output:
            self._apply("output", result.final_text)
        self._apply("stat", f"Tokens/second: {result.tokens_per_second:.3f}")
        return result
