"""
Local reasoning-model chat runner

Runs a local Hugging Face causal language model from a single prompt:
- Resolves the model from the local cache or downloads it
- Streams generated text with throttled updates
- Shows <think> reasoning blocks as quoted text
"""

__version__ = "0.1.0"
