"""
Concrete collaborators backed by Hugging Face and PyTorch.

This module provides:
- HubDownloader: snapshot download of model files with progress reporting
- TransformersModelFactory: empty model creation and safetensors weight loading
- HFTokenizer / load_tokenizer: tokenizer adapter bound to a model directory
- TorchGenerationEngine: token-by-token generation with a per-token callback
"""

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import torch
from huggingface_hub import snapshot_download
from huggingface_hub.errors import EntryNotFoundError, RepositoryNotFoundError
from huggingface_hub.utils import tqdm as hf_tqdm
from safetensors.torch import load_file
from transformers import (
    AutoConfig,
    AutoModelForCausalLM,
    AutoTokenizer,
    StoppingCriteria,
    StoppingCriteriaList,
)

from .config import config
from .errors import ResolutionError, ResolutionErrorKind
from .generator import Continuation, EngineOutput, GenerateParameters
from .model_loader import ModelHandle

logger = logging.getLogger(__name__)


def get_torch_dtype(dtype_str: str = "auto"):
    """
    Convert dtype string to torch dtype.

    Args:
        dtype_str: String representation of dtype ("auto", "float16", "bfloat16", "float32")

    Returns:
        torch.dtype or "auto"
    """
    if dtype_str == "auto":
        return "auto"

    dtype_map = {
        "float16": torch.float16,
        "fp16": torch.float16,
        "bfloat16": torch.bfloat16,
        "bf16": torch.bfloat16,
        "float32": torch.float32,
        "fp32": torch.float32,
    }

    return dtype_map.get(dtype_str.lower(), torch.float16)


def _progress_bar_class(on_progress: Callable[[float], None]):
    """Build a hub progress bar class that forwards the completed fraction."""

    class ProgressBar(hf_tqdm):
        # Counted here since a disabled bar never advances self.n.
        completed = 0

        def update(self, n=1):
            displayed = super().update(n)
            self.completed += n or 0
            if self.total:
                on_progress(min(self.completed / self.total, 1.0))
            return displayed

    return ProgressBar


class HubDownloader:
    """Downloads model files from the Hugging Face Hub into the local model directory."""

    def __init__(self, models_dir: Optional[Path] = None):
        self.models_dir = Path(models_dir or config.MODELS_DIR)

    def snapshot(
        self, identity: str, patterns: Sequence[str], on_progress: Callable[[float], None]
    ) -> None:
        local_dir = self.models_dir / identity
        local_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading {identity} ({', '.join(patterns)}) to {local_dir}")

        try:
            snapshot_download(
                repo_id=identity,
                allow_patterns=list(patterns),
                local_dir=str(local_dir),
                tqdm_class=_progress_bar_class(on_progress),
            )
        except (RepositoryNotFoundError, EntryNotFoundError) as e:
            raise ResolutionError(ResolutionErrorKind.NOT_FOUND, f"{identity}: {e}") from e
        on_progress(1.0)


class TransformersModelFactory:
    """Creates transformers causal LM models and loads safetensors weights into them."""

    def __init__(self, device: Optional[str] = None, torch_dtype: Optional[str] = None):
        self.device = device or config.get_device()
        self.torch_dtype = torch_dtype or config.TORCH_DTYPE

    def create_model(self, config_path: Path, model_type: str):
        model_config = AutoConfig.from_pretrained(str(Path(config_path).parent))
        if model_config.model_type != model_type:
            raise ValueError(
                f"config declares {model_type} but transformers resolved {model_config.model_type}"
            )
        logger.info(f"Creating empty {model_type} model")
        return AutoModelForCausalLM.from_config(model_config)

    def load_weights(self, directory: Path, model, quantization: Optional[dict]) -> None:
        if quantization:
            raise ValueError(f"quantized checkpoints are not supported: {quantization}")

        weight_files = sorted(Path(directory).glob("*.safetensors"))
        if not weight_files:
            raise FileNotFoundError(f"no safetensors files in {directory}")

        state_dict = {}
        for path in weight_files:
            logger.debug(f"Reading {path.name}")
            state_dict.update(load_file(str(path)))

        missing, unexpected = model.load_state_dict(state_dict, strict=False)
        model.tie_weights()
        if getattr(model.config, "tie_word_embeddings", False):
            missing = [k for k in missing if not k.startswith("lm_head.")]
        if missing:
            raise ValueError(f"{len(missing)} weights missing from checkpoint, e.g. {missing[:3]}")
        if unexpected:
            logger.warning(f"Ignoring {len(unexpected)} unexpected weights, e.g. {unexpected[:3]}")

        dtype = get_torch_dtype(self.torch_dtype)
        if dtype == "auto":
            dtype = getattr(model.config, "torch_dtype", None) or torch.float32
            if isinstance(dtype, str):
                dtype = get_torch_dtype(dtype)
        model.to(device=self.device, dtype=dtype)
        model.eval()

        logger.info(f"Model device: {model.device}")
        logger.info(f"Model dtype: {model.dtype}")


class HFTokenizer:
    """Adapter exposing the tokenizer calls the session needs."""

    def __init__(self, tokenizer):
        self.tokenizer = tokenizer

    @property
    def eos_token_id(self) -> Optional[int]:
        return self.tokenizer.eos_token_id

    def apply_chat_template(self, messages: List[dict]) -> List[int]:
        if not getattr(self.tokenizer, "chat_template", None):
            raise ValueError("tokenizer has no chat template")
        text = self.tokenizer.apply_chat_template(
            messages, tokenize=False, add_generation_prompt=True
        )
        return self.tokenizer.encode(text, add_special_tokens=False)

    def encode(self, text: str) -> List[int]:
        return self.tokenizer.encode(text)

    def decode(self, token_ids: Sequence[int]) -> str:
        return self.tokenizer.decode(list(token_ids), skip_special_tokens=True)


def load_tokenizer(directory: Path) -> HFTokenizer:
    """Load the tokenizer stored alongside the model weights."""
    logger.info("Loading tokenizer...")
    return HFTokenizer(AutoTokenizer.from_pretrained(str(directory)))


class PartialOutputCriteria(StoppingCriteria):
    """Hands the generated tokens to a callback after every step; stops when it says so."""

    def __init__(self, on_partial: Callable[[Sequence[int]], Continuation], prompt_length: int):
        self.on_partial = on_partial
        self.prompt_length = prompt_length

    def __call__(self, input_ids, scores, **kwargs):
        tokens = input_ids[0, self.prompt_length :].tolist()
        stop = self.on_partial(tokens) is Continuation.STOP
        return torch.full((input_ids.shape[0],), stop, dtype=torch.bool, device=input_ids.device)


class TorchGenerationEngine:
    """Runs model.generate() with a per-token continuation callback."""

    def seed(self, value: int) -> None:
        torch.manual_seed(value)

    def generate(
        self,
        input_ids: List[int],
        parameters: GenerateParameters,
        handle: ModelHandle,
        on_partial: Callable[[Sequence[int]], Continuation],
    ) -> EngineOutput:
        model = handle.model
        inputs = torch.tensor([input_ids], device=model.device)
        prompt_length = inputs.shape[1]
        logger.debug(f"Input length: {prompt_length} tokens")

        do_sample = parameters.temperature > 0
        generation_kwargs = dict(
            input_ids=inputs,
            attention_mask=torch.ones_like(inputs),
            max_length=getattr(model.config, "max_position_embeddings", prompt_length + 4096),
            stopping_criteria=StoppingCriteriaList([PartialOutputCriteria(on_partial, prompt_length)]),
            do_sample=do_sample,
            pad_token_id=handle.tokenizer.eos_token_id,
            eos_token_id=handle.tokenizer.eos_token_id,
        )
        if do_sample:
            generation_kwargs.update(temperature=parameters.temperature, top_p=parameters.top_p)

        start = time.perf_counter()
        with torch.no_grad():
            outputs = model.generate(**generation_kwargs)
        elapsed = time.perf_counter() - start

        new_tokens = outputs[0][prompt_length:].tolist()
        tokens_per_second = len(new_tokens) / elapsed if elapsed > 0 else 0.0
        return EngineOutput(handle.tokenizer.decode(new_tokens), tokens_per_second)
