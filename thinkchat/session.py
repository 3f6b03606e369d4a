"""
Default session wiring.

Builds a GenerationController backed by the Hugging Face hub downloader,
the transformers model factory and the torch generation engine.
"""

import logging
from typing import Optional

from .backends import HubDownloader, TorchGenerationEngine, TransformersModelFactory, load_tokenizer
from .config import config
from .generator import GenerateParameters, GenerationController
from .model_loader import ModelResolver

logger = logging.getLogger(__name__)

_resolver: Optional[ModelResolver] = None


def get_resolver() -> ModelResolver:
    """Get or create the process-wide resolver, so each model loads at most once."""
    global _resolver
    if _resolver is None:
        _resolver = ModelResolver(
            downloader=HubDownloader(config.MODELS_DIR),
            model_factory=TransformersModelFactory(),
            tokenizer_loader=load_tokenizer,
            models_dir=config.MODELS_DIR,
        )
    return _resolver


def create_controller(
    model_id: Optional[str] = None, max_tokens: Optional[int] = None
) -> GenerationController:
    """
    Create a generation session for a model.

    Args:
        model_id: Model identity (default: config.MODEL_ID)
        max_tokens: Token budget per generation (default: config.MAX_TOKENS)

    Returns:
        A controller sharing the process-wide resolver
    """
    model_id = model_id or config.MODEL_ID
    logger.debug(f"Creating session for {model_id}: {config.summary()}")
    return GenerationController(
        resolver=get_resolver(),
        engine=TorchGenerationEngine(),
        model_id=model_id,
        max_tokens=max_tokens or config.MAX_TOKENS,
        display_every_n_tokens=config.DISPLAY_EVERY_N_TOKENS,
        parameters=GenerateParameters(temperature=config.TEMPERATURE, top_p=config.TOP_P),
    )
