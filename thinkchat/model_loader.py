"""
Model resolution and loading.

This module handles:
- Checking the local model directory for the canonical weights file
- Downloading missing model files through the hub downloader
- Building a model, tokenizer and input processor from a local directory
- Memoizing the loaded handle for the rest of the process
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .config import config
from .errors import ResolutionError, ResolutionErrorKind

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]


class Downloader(Protocol):
    def snapshot(
        self, identity: str, patterns: Sequence[str], on_progress: Callable[[float], None]
    ) -> None: ...


class ModelFactory(Protocol):
    def create_model(self, config_path: Path, model_type: str) -> Any: ...

    def load_weights(self, directory: Path, model: Any, quantization: Optional[dict]) -> None: ...


class Tokenizer(Protocol):
    def apply_chat_template(self, messages: List[Dict[str, str]]) -> List[int]: ...

    def encode(self, text: str) -> List[int]: ...

    def decode(self, token_ids: Sequence[int]) -> str: ...


class UserInputProcessor:
    """Turns a user prompt into model input token ids."""

    def __init__(self, tokenizer: Tokenizer):
        self.tokenizer = tokenizer

    def prepare(self, prompt: str) -> List[int]:
        """
        Encode a prompt as a single user chat turn.

        Falls back to encoding the joined turn contents directly when the
        tokenizer has no usable chat template.
        """
        messages = [{"role": "user", "content": prompt}]
        try:
            return list(self.tokenizer.apply_chat_template(messages))
        except Exception as e:
            logger.warning(f"Chat template failed, using raw prompt: {e}")
            text = ". ".join(m["content"] for m in messages if m.get("content"))
            return list(self.tokenizer.encode(text))


@dataclass
class ModelHandle:
    """A loaded model with its tokenizer and input processor."""

    identity: str
    directory: Path
    model: Any
    tokenizer: Tokenizer
    processor: UserInputProcessor
    num_parameters: int = 0


class LoadStatus(str, Enum):
    IDLE = "idle"
    LOADED = "loaded"


@dataclass(frozen=True)
class LoadState:
    """Either idle, or loaded with a handle. Loaded is final."""

    status: LoadStatus = LoadStatus.IDLE
    handle: Optional[ModelHandle] = None

    @classmethod
    def idle(cls) -> "LoadState":
        return cls()

    @classmethod
    def loaded(cls, handle: ModelHandle) -> "LoadState":
        return cls(LoadStatus.LOADED, handle)

    @property
    def is_loaded(self) -> bool:
        return self.status is LoadStatus.LOADED


def get_model_info(model) -> dict:
    """
    Get information about a loaded torch model.

    Args:
        model: The loaded model

    Returns:
        Dictionary with model information
    """
    try:
        num_params = sum(p.numel() for p in model.parameters())
        num_params_trainable = sum(
            p.numel() for p in model.parameters() if p.requires_grad
        )

        return {
            "device": str(model.device),
            "dtype": str(model.dtype),
            "num_parameters": num_params,
            "num_trainable_parameters": num_params_trainable,
            "num_parameters_millions": round(num_params / 1_000_000, 2),
        }
    except Exception as e:
        logger.warning(f"Could not get model info: {e}")
        return {}


class ModelResolver:
    """Resolves model identities into loaded handles, downloading when needed."""

    CONFIG_FILENAME = "config.json"

    def __init__(
        self,
        downloader: Downloader,
        model_factory: ModelFactory,
        tokenizer_loader: Callable[[Path], Tokenizer],
        models_dir: Optional[Path] = None,
        weights_filename: Optional[str] = None,
        download_patterns: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the resolver.

        Args:
            downloader: Fetches files matching glob patterns into a model directory
            model_factory: Creates empty models and loads weights into them
            tokenizer_loader: Builds a tokenizer from a model directory
            models_dir: Root of the per-identity directories (default: config.MODELS_DIR)
            weights_filename: Canonical weights file (default: config.WEIGHTS_FILENAME)
            download_patterns: Glob patterns to download (default: config.DOWNLOAD_PATTERNS)
        """
        self.downloader = downloader
        self.model_factory = model_factory
        self.tokenizer_loader = tokenizer_loader
        self.models_dir = Path(models_dir or config.MODELS_DIR)
        self.weights_filename = weights_filename or config.WEIGHTS_FILENAME
        self.download_patterns = tuple(download_patterns or config.DOWNLOAD_PATTERNS)
        # Written from the generation worker. The controller runs one resolve at a
        # time and mirrors each transition into its own state on the owning thread.
        self._states: Dict[str, LoadState] = {}

    def model_directory(self, identity: str) -> Path:
        return self.models_dir / identity

    def exists_locally(self, identity: str) -> bool:
        """Check whether the canonical weights file is present (no integrity check)."""
        return (self.model_directory(identity) / self.weights_filename).exists()

    def state(self, identity: str) -> LoadState:
        return self._states.get(identity, LoadState.idle())

    def resolve(self, identity: str, on_status: Optional[StatusCallback] = None) -> ModelHandle:
        """
        Return a ready handle for identity, loading it on first use.

        Args:
            identity: Model identity, e.g. "org/name"
            on_status: Optional callback receiving human-readable status strings

        Returns:
            The memoized ModelHandle

        Raises:
            ResolutionError: If the model cannot be downloaded or loaded
        """
        state = self.state(identity)
        if state.is_loaded:
            return state.handle

        def status(message: str):
            logger.info(message)
            if on_status:
                on_status(message)

        directory = self.model_directory(identity)
        if self.exists_locally(identity):
            status(f"Loading model from local directory: {identity}")
        else:
            status(f"Model not found locally. Downloading: {identity}")
            self._download(identity, directory, status)

        handle = self._build(identity, directory)
        self._states[identity] = LoadState.loaded(handle)
        status(f"Loaded {identity}. Weights: {round(handle.num_parameters / 1_000_000)}M")
        return handle

    def _download(self, identity: str, directory: Path, status: StatusCallback):
        def on_progress(fraction: float):
            status(f"Downloading {identity}: {int(fraction * 100)}%")

        try:
            self.downloader.snapshot(identity, self.download_patterns, on_progress)
        except ResolutionError:
            raise
        except Exception as e:
            logger.error(f"Download of {identity} failed: {e}")
            raise ResolutionError(ResolutionErrorKind.DOWNLOAD_FAILED, f"{identity}: {e}") from e

        if not (directory / self.weights_filename).exists():
            raise ResolutionError(
                ResolutionErrorKind.NOT_FOUND,
                f"{identity} has no {self.weights_filename} after download",
            )

    def _read_config(self, directory: Path) -> dict:
        config_path = directory / self.CONFIG_FILENAME
        if not config_path.exists():
            raise ResolutionError(
                ResolutionErrorKind.NOT_FOUND, f"missing {self.CONFIG_FILENAME} in {directory}"
            )
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                base_config = json.load(f)
        except (OSError, ValueError) as e:
            raise ResolutionError(
                ResolutionErrorKind.CONFIG_INVALID, f"cannot decode {config_path}: {e}"
            ) from e

        if not isinstance(base_config, dict) or not base_config.get("model_type"):
            raise ResolutionError(
                ResolutionErrorKind.CONFIG_INVALID, f"{config_path} declares no model_type"
            )
        return base_config

    def _build(self, identity: str, directory: Path) -> ModelHandle:
        base_config = self._read_config(directory)
        model_type = base_config["model_type"]
        quantization = base_config.get("quantization") or base_config.get("quantization_config")
        logger.debug(f"Building {identity}: model_type={model_type}, quantization={quantization}")

        try:
            model = self.model_factory.create_model(directory / self.CONFIG_FILENAME, model_type)
        except Exception as e:
            raise ResolutionError(
                ResolutionErrorKind.CONFIG_INVALID, f"cannot create {model_type} model: {e}"
            ) from e

        try:
            self.model_factory.load_weights(directory, model, quantization)
        except Exception as e:
            raise ResolutionError(ResolutionErrorKind.WEIGHT_LOAD_FAILED, str(e)) from e

        try:
            tokenizer = self.tokenizer_loader(directory)
        except Exception as e:
            raise ResolutionError(
                ResolutionErrorKind.CONFIG_INVALID, f"cannot load tokenizer: {e}"
            ) from e

        num_parameters = get_model_info(model).get("num_parameters", 0)
        return ModelHandle(
            identity=identity,
            directory=directory,
            model=model,
            tokenizer=tokenizer,
            processor=UserInputProcessor(tokenizer),
            num_parameters=num_parameters,
        )
