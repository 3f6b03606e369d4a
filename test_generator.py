"""
Tests for the generation controller and its token budget.
"""

import re
import threading
import time

from thinkchat.errors import GenerationErrorKind, ResolutionErrorKind
from thinkchat.generator import Continuation, ContinuationPredicate, GenerationController


def record_updates(controller):
    updates = []
    controller.add_listener(lambda field, value: updates.append((field, value)))
    return updates


def test_predicate_stops_exactly_at_budget():
    published = []
    predicate = ContinuationPredicate(
        max_tokens=5, display_every=2, decode=lambda t: "x" * len(t), publish=published.append
    )

    decisions = [predicate(list(range(n))) for n in range(1, 6)]

    assert decisions == [Continuation.MORE] * 4 + [Continuation.STOP]
    assert published == ["xx", "xxxx"]
    assert predicate.token_count == 5


def test_predicate_cadence_of_one_publishes_every_token():
    published = []
    predicate = ContinuationPredicate(3, 1, decode=str, publish=published.append)
    for n in range(1, 4):
        predicate(list(range(n)))
    assert len(published) == 3


def test_engine_is_not_asked_past_budget(controller, engine):
    result = controller.generate("hello")

    assert engine.steps == 8
    assert result.token_count == 8
    assert result.final_text == "<think>p"


def test_end_to_end_download_load_generate(controller, downloader, factory, tokenizer):
    result = controller.generate("hello")

    assert downloader.calls == [("demo/tiny", ("*.safetensors", "*.json"))]
    assert factory.created[0][1] == "tiny"
    assert result.ok
    assert result.final_text
    assert result.tokens_per_second >= 0
    assert controller.output == result.final_text
    assert controller.state.load_state.is_loaded
    assert controller.state.model_info == "Loaded demo/tiny. Weights: 3M"
    assert re.fullmatch(r"Tokens/second: \d+\.\d{3}", controller.state.stat)


def test_running_is_cleared_after_success(controller):
    seen = []
    controller.add_listener(lambda field, value: field == "running" and seen.append(value))

    controller.generate("hello")

    assert seen == [True, False]
    assert not controller.running


def test_partial_output_is_published_every_n_tokens(controller):
    updates = record_updates(controller)
    controller.generate("hello")

    outputs = [value for field, value in updates if field == "output"]
    # Cleared at start, partials at token 4 and 8, no reconcile needed.
    assert outputs == ["", "<thi", "<think>p"]


def test_final_output_overwrites_stale_partial(resolver, engine):
    engine.reply = "abcdef"
    controller = GenerationController(resolver, engine, "demo/tiny", max_tokens=100, display_every_n_tokens=4)
    updates = record_updates(controller)

    result = controller.generate("hello")

    outputs = [value for field, value in updates if field == "output"]
    assert outputs == ["", "abcd", "abcdef"]
    assert result.final_text == "abcdef"
    assert controller.output == "abcdef"


def test_final_output_differing_only_in_whitespace_still_overwrites(resolver, engine):
    engine.reply = "abcd"
    engine.final_text = "abcd "
    controller = GenerationController(resolver, engine, "demo/tiny", max_tokens=100, display_every_n_tokens=4)

    controller.generate("hello")

    assert controller.output == "abcd "


def test_second_generate_while_running_is_rejected(controller):
    nested = []

    def on_update(field, value):
        if field == "output" and value and not nested:
            before = controller.output
            nested.append((controller.generate("other prompt"), before, controller.output))

    controller.add_listener(on_update)
    result = controller.generate("hello")

    assert len(nested) == 1
    rejected, before, after = nested[0]
    assert rejected is None
    assert before == after
    assert result.final_text == "<think>p"
    assert not controller.running


def test_rejected_call_does_not_start_engine(controller, engine):
    controller.state.running = True
    assert controller.generate("hello") is None
    assert engine.steps == 0
    assert controller.output == ""


def test_updates_are_applied_on_calling_thread(controller):
    threads = set()
    controller.add_listener(lambda field, value: threads.add(threading.get_ident()))

    controller.generate("hello")

    assert threads == {threading.get_ident()}


def test_generation_seeds_from_wall_clock_millis(controller, engine):
    before = int(time.time() * 1000)
    controller.generate("hello")
    after = int(time.time() * 1000)

    assert len(engine.seeds) == 1
    assert before <= engine.seeds[0] <= after


def test_model_loads_once_across_generations(controller, downloader, factory):
    controller.generate("first")
    controller.generate("second")

    assert len(downloader.calls) == 1
    assert len(factory.created) == 1


def test_download_failure_is_reported_in_output(controller, downloader):
    downloader.fail = ConnectionError("network down")

    result = controller.generate("hello")

    assert not result.ok
    assert result.error.kind is ResolutionErrorKind.DOWNLOAD_FAILED
    assert controller.output.startswith("Failed: ")
    assert "network down" in controller.output
    assert not controller.running
    assert not controller.state.load_state.is_loaded


def test_engine_failure_replaces_partial_output(controller, engine):
    engine.fail = RuntimeError("out of memory")

    result = controller.generate("hello")

    assert result.error.kind is GenerationErrorKind.ENGINE_FAILURE
    assert controller.output == "Failed: engine failure: out of memory"
    assert result.final_text == controller.output
    assert not controller.running


def test_input_preparation_failure(controller, tokenizer):
    controller.resolver.resolve("demo/tiny")
    tokenizer.template_fails = True
    tokenizer.encode_fails = True

    result = controller.generate("hello")

    assert result.error.kind is GenerationErrorKind.INPUT_PREP_FAILED
    assert not controller.running


def test_chat_template_failure_falls_back_to_plain_prompt(controller, engine, tokenizer):
    tokenizer.template_fails = True

    result = controller.generate("hello")

    assert result.ok
    assert engine.inputs == [[ord(c) for c in "hello"]]


def test_listener_error_still_clears_running(controller):
    failures = []

    def broken(field, value):
        if field == "output" and value and not failures:
            failures.append(value)
            raise RuntimeError("display closed")

    controller.add_listener(broken)
    result = controller.generate("hello")

    assert result.ok
    assert result.final_text == "<think>p"
    assert controller.output == "<think>p"
    assert not controller.running


def test_listener_error_on_running_update_does_not_wedge_session(controller, engine):
    def broken(field, value):
        if field == "running" and value:
            raise RuntimeError("display closed")

    controller.add_listener(broken)
    first = controller.generate("hello")
    controller.remove_listener(broken)
    second = controller.generate("hello")

    assert first.ok
    assert second is not None
    assert second.ok
    assert engine.steps == 16
    assert not controller.running


def test_listener_error_on_failure_message_stays_inside_session(controller, downloader):
    downloader.fail = ConnectionError("network down")

    def broken(field, value):
        if field == "output" and str(value).startswith("Failed: "):
            raise RuntimeError("display closed")

    controller.add_listener(broken)
    result = controller.generate("hello")

    assert result.error.kind is ResolutionErrorKind.DOWNLOAD_FAILED
    assert controller.output.startswith("Failed: ")
    assert not controller.running


def test_load_publishes_model_info(controller):
    handle = controller.load()

    assert controller.state.load_state.handle is handle
    assert controller.state.model_info == "Loaded demo/tiny. Weights: 3M"


def test_session_load_state_mirrors_resolver_after_generate(controller, resolver):
    controller.generate("hello")

    assert resolver.state("demo/tiny").is_loaded
    assert controller.state.load_state == resolver.state("demo/tiny")
