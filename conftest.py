"""
Shared fixtures: in-memory stand-ins for the downloader, model factory,
tokenizer and generation engine, so tests need no network and no weights.
"""

import json
import logging
from pathlib import Path

import pytest

from thinkchat.generator import Continuation, EngineOutput, GenerationController
from thinkchat.model_loader import ModelResolver

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


class FakeParameter:
    def __init__(self, count):
        self.count = count
        self.requires_grad = True

    def numel(self):
        return self.count


class FakeModel:
    device = "cpu"
    dtype = "float32"

    def __init__(self, model_type):
        self.model_type = model_type
        self.weights_loaded = False

    def parameters(self):
        return [FakeParameter(2_000_000), FakeParameter(1_000_000)]


class SpyDownloader:
    """Writes a config and weights file into the model directory and counts calls."""

    def __init__(self, models_dir: Path, events: list):
        self.models_dir = models_dir
        self.events = events
        self.calls = []
        self.progress = (0.0, 0.5, 1.0)
        self.fail = None
        self.config = {"model_type": "tiny"}
        self.write_weights = True

    def snapshot(self, identity, patterns, on_progress):
        self.calls.append((identity, tuple(patterns)))
        self.events.append("download")
        if self.fail is not None:
            raise self.fail
        for fraction in self.progress:
            on_progress(fraction)

        directory = self.models_dir / identity
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "config.json").write_text(json.dumps(self.config))
        if self.write_weights:
            (directory / "model.safetensors").write_bytes(b"weights")


class FakeModelFactory:
    def __init__(self, events: list):
        self.events = events
        self.created = []
        self.create_error = None
        self.load_error = None

    def create_model(self, config_path, model_type):
        self.events.append("create_model")
        if self.create_error is not None:
            raise self.create_error
        self.created.append((Path(config_path), model_type))
        return FakeModel(model_type)

    def load_weights(self, directory, model, quantization):
        self.events.append("load_weights")
        if self.load_error is not None:
            raise self.load_error
        model.weights_loaded = True


class FakeTokenizer:
    """One token per character."""

    def __init__(self):
        self.template_fails = False
        self.encode_fails = False
        self.encoded = []

    def apply_chat_template(self, messages):
        if self.template_fails:
            raise ValueError("no chat template")
        return self.encode("".join(f"<{m['role']}>{m['content']}" for m in messages))

    def encode(self, text):
        if self.encode_fails:
            raise ValueError("cannot encode")
        self.encoded.append(text)
        return [ord(c) for c in text]

    def decode(self, token_ids):
        return "".join(chr(t) for t in token_ids)


class ScriptedEngine:
    """Emits a fixed reply one token at a time, asking on_partial after each."""

    def __init__(self, reply="<think>plan</think>Hello there, friend!"):
        self.reply = reply
        self.steps = 0
        self.seeds = []
        self.inputs = []
        self.fail = None
        self.final_text = None

    def seed(self, value):
        self.seeds.append(value)

    def generate(self, input_ids, parameters, handle, on_partial):
        self.inputs.append(list(input_ids))
        if self.fail is not None:
            raise self.fail

        reply_ids = handle.tokenizer.encode(self.reply)
        tokens = []
        for token in reply_ids:
            tokens.append(token)
            self.steps += 1
            if on_partial(list(tokens)) is Continuation.STOP:
                break

        text = self.final_text if self.final_text is not None else handle.tokenizer.decode(tokens)
        return EngineOutput(output_text=text, tokens_per_second=float(len(tokens)))


@pytest.fixture
def events():
    return []


@pytest.fixture
def models_dir(tmp_path):
    return tmp_path / "models"


@pytest.fixture
def downloader(models_dir, events):
    return SpyDownloader(models_dir, events)


@pytest.fixture
def factory(events):
    return FakeModelFactory(events)


@pytest.fixture
def tokenizer():
    return FakeTokenizer()


@pytest.fixture
def resolver(models_dir, downloader, factory, tokenizer, events):
    def load_tokenizer(directory):
        events.append("tokenizer")
        return tokenizer

    return ModelResolver(
        downloader=downloader,
        model_factory=factory,
        tokenizer_loader=load_tokenizer,
        models_dir=models_dir,
        weights_filename="model.safetensors",
        download_patterns=("*.safetensors", "*.json"),
    )


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def controller(resolver, engine):
    return GenerationController(
        resolver=resolver,
        engine=engine,
        model_id="demo/tiny",
        max_tokens=8,
        display_every_n_tokens=4,
    )
