"""
Central configuration module for the local reasoning chat runner.

This module manages all configuration settings including:
- Model identity and local model storage
- Device and dtype settings
- Generation parameters and display cadence
- Reasoning marker pair and display style
"""

import logging
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Central configuration for the chat runner."""

    # Model settings
    MODEL_ID: str = os.getenv("MODEL_ID", "deepseek-ai/DeepSeek-R1-Distill-Qwen-1.5B")
    MODELS_DIR: Path = Path(
        os.getenv("MODELS_DIR", str(Path.home() / "huggingface" / "models"))
    ).expanduser()
    WEIGHTS_FILENAME: str = "model.safetensors"
    DOWNLOAD_PATTERNS = ("*.safetensors", "*.json")

    # Device and compute settings
    DEVICE: str = os.getenv("DEVICE", "auto")  # "auto", "cpu", "cuda", "mps"
    TORCH_DTYPE: str = os.getenv("TORCH_DTYPE", "auto")  # "auto", "float16", "bfloat16", "float32"

    # Generation parameters (defaults)
    MAX_TOKENS: int = int(os.getenv("MAX_TOKENS", "4096"))
    DISPLAY_EVERY_N_TOKENS: int = int(os.getenv("DISPLAY_EVERY_N_TOKENS", "4"))
    TEMPERATURE: float = float(os.getenv("TEMPERATURE", "0.0"))
    TOP_P: float = float(os.getenv("TOP_P", "1.0"))

    # Reasoning markers and display
    THINK_OPEN: str = os.getenv("THINK_OPEN", "<think>")
    THINK_CLOSE: str = os.getenv("THINK_CLOSE", "</think>")
    DISPLAY_STYLE: str = os.getenv("DISPLAY_STYLE", "markdown")  # "plain", "markdown"

    # Logging (unset: each front end picks its own default)
    LOG_LEVEL: Optional[str] = os.getenv("LOG_LEVEL")

    @classmethod
    def get_device(cls) -> str:
        """
        Get the appropriate device string for PyTorch.

        Returns:
            The configured device, or the best available one when set to "auto"
        """
        if cls.DEVICE != "auto":
            return cls.DEVICE

        import torch

        if torch.cuda.is_available():
            return "cuda"
        if torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    @classmethod
    def get_log_level(cls, default: int = logging.INFO) -> int:
        """Numeric level for LOG_LEVEL, or default when it is unset or unknown."""
        if not cls.LOG_LEVEL:
            return default
        level = logging.getLevelName(cls.LOG_LEVEL.upper())
        return level if isinstance(level, int) else default

    @classmethod
    def summary(cls) -> dict:
        """
        Get a summary of current configuration.

        Returns:
            Dictionary with all config values
        """
        return {
            "model_id": cls.MODEL_ID,
            "models_dir": str(cls.MODELS_DIR),
            "device": cls.DEVICE,
            "torch_dtype": cls.TORCH_DTYPE,
            "max_tokens": cls.MAX_TOKENS,
            "display_every_n_tokens": cls.DISPLAY_EVERY_N_TOKENS,
            "temperature": cls.TEMPERATURE,
            "top_p": cls.TOP_P,
            "display_style": cls.DISPLAY_STYLE,
            "log_level": cls.LOG_LEVEL,
        }


# Singleton instance
config = Config()
