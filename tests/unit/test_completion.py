"""
Unit tests for CompletionSession.

Run with: pytest tests/unit/test_completion.py -v
"""

import logging

import pytest

from pocket_llama.completion import CompletionSession, CompletionState, held_back_length
from pocket_llama.errors import EngineError, StateError
from pocket_llama.sampling import SamplingConfig
from tests.conftest import BOS, FakeEngine, encode


def make_session(engine, max_tokens=None, stop=(), prompt="Q:"):
    config = SamplingConfig(max_tokens=max_tokens, stop=stop)
    return CompletionSession(engine, [BOS] + encode(prompt), config)


class TestHeldBackLength:
    """Test the stop-string hold-back computation."""

    def test_partial_stop_is_held(self):
        """Test that a suffix matching the start of a stop string is held back"""
        assert held_back_length("hello</", ["</s>"]) == 2
        assert held_back_length("hello<", ["</s>"]) == 1

    def test_no_overlap(self):
        """Test that unrelated text is not held back"""
        assert held_back_length("hello", ["</s>"]) == 0
        assert held_back_length("hello", []) == 0

    def test_longest_prefix_wins(self):
        """Test that the longest matching prefix across stops is used"""
        assert held_back_length("abc##", ["#", "###"]) == 2


class TestGeneration:
    """Test the decode loop and its finish reasons."""

    def test_eos_finishes_with_stop(self):
        """Test that EOS ends generation with finish_reason 'stop'"""
        session = make_session(FakeEngine(script="Hi there"))
        result = session.run()

        assert result.text == "Hi there"
        assert result.content == "Hi there"
        assert result.finish_reason == "stop"
        assert result.stopped_eos is True
        assert result.tokens_predicted == len("Hi there")
        assert result.tokens_evaluated == 1 + len("Q:")
        assert result.state is CompletionState.COMPLETED
        assert session.is_finished

    def test_stop_string_truncates_text(self):
        """Test that output is cut at a stop string and the stop is not emitted"""
        session = make_session(FakeEngine(script="hello</s> world"), stop=("</s>",))
        chunks = list(session.tokens())
        result = session.result

        assert result.text == "hello"
        assert "".join(c.text for c in chunks) == "hello"
        assert all("<" not in c.text for c in chunks)
        assert result.stopped_word is True
        assert result.stopping_word == "</s>"
        assert result.finish_reason == "stop"

    def test_held_back_text_is_released_when_stop_does_not_match(self):
        """Test that a held-back partial stop is emitted once it diverges"""
        session = make_session(FakeEngine(script="a</b"), stop=("</s>",))
        chunks = list(session.tokens())

        assert "".join(c.text for c in chunks) == "a</b"
        assert session.result.stopped_word is False

    def test_earliest_stop_wins(self):
        """Test that the earliest of several stop strings ends the output"""
        session = make_session(FakeEngine(script="one. two! three"), stop=("!", "."))
        assert session.run().text == "one"

    def test_chunk_indexes_are_sequential(self):
        """Test that chunks carry increasing indexes"""
        session = make_session(FakeEngine(script="abcd"))
        chunks = list(session.tokens())
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_max_tokens(self):
        """Test that max_tokens limits generation"""
        session = make_session(FakeEngine(script="abcdefgh"), max_tokens=3)
        result = session.run()

        assert result.text == "abc"
        assert result.tokens_predicted == 3
        assert result.stopped_limit is True
        assert result.finish_reason == "length"

    def test_context_window_exhaustion(self):
        """Test that generation stops when prompt plus output fill the context"""
        engine = FakeEngine(n_ctx=10, infinite=True, script="x")
        session = make_session(engine)
        result = session.run()

        assert result.truncated is True
        assert result.finish_reason == "context_length_exceeded"
        assert result.tokens_evaluated + result.tokens_predicted == 10

    def test_prompt_longer_than_context(self):
        """Test that an oversized prompt fails before decoding"""
        session = make_session(FakeEngine(n_ctx=4), prompt="much too long")

        with pytest.raises(EngineError) as exc_info:
            session.run()

        assert "context window is 4" in str(exc_info.value)
        assert session.state is CompletionState.FAILED

    def test_multibyte_characters_are_not_split(self):
        """Test that UTF-8 sequences spanning tokens decode to whole characters"""
        session = make_session(FakeEngine(script="héllo wörld ✓"))
        chunks = list(session.tokens())

        assert "".join(c.text for c in chunks) == "héllo wörld ✓"
        assert all("�" not in c.text for c in chunks)


class TestCancellation:
    """Test stopping a running completion."""

    def test_cancel_from_callback(self):
        """Test that cancel() stops generation before the next decode step"""
        engine = FakeEngine(infinite=True, script="ab")
        session = make_session(engine)
        seen = []

        def on_token(chunk):
            seen.append(chunk)
            if len(seen) == 5:
                session.cancel()

        result = session.run(on_token)

        assert result.finish_reason == "cancelled"
        assert result.state is CompletionState.STOPPED
        assert result.tokens_predicted == 5
        assert engine.generators_closed == 1

    def test_closing_the_iterator_stops(self):
        """Test that abandoning the chunk iterator stops the session"""
        engine = FakeEngine(infinite=True)
        session = make_session(engine)
        iterator = session.tokens()
        next(iterator)
        iterator.close()

        assert session.state is CompletionState.STOPPED
        assert engine.generators_closed == 1

    def test_tokens_is_one_shot(self):
        """Test that the chunk stream can only be consumed once"""
        session = make_session(FakeEngine())
        session.run()

        with pytest.raises(StateError):
            session.tokens()


class TestFailures:
    """Test failures during decoding."""

    def test_engine_failure_becomes_engine_error(self):
        """Test that an engine exception is raised as EngineError with diagnostics"""
        engine = FakeEngine(script="abcdef", fail_after=2)
        config = SamplingConfig()
        session = CompletionSession(engine, encode("Q"), config, diagnostics={"template": None})

        with pytest.raises(EngineError) as exc_info:
            session.run()

        assert "Decoding failed" in exc_info.value.message
        assert "template" in exc_info.value.diagnostics
        assert session.state is CompletionState.FAILED
        assert engine.generators_closed == 1

    def test_callback_errors_do_not_stop_generation(self, caplog):
        """Test that a raising on_token callback is logged and ignored"""
        session = make_session(FakeEngine(script="abc"))

        def on_token(chunk):
            raise RuntimeError("boom")

        with caplog.at_level(logging.WARNING, logger="pocket_llama.completion"):
            result = session.run(on_token)

        assert result.text == "abc"
        assert "boom" in caplog.text


class TestResult:
    """Test the result record."""

    def test_to_dict(self):
        """Test that to_dict produces plain JSON-able values"""
        result = make_session(FakeEngine(script="ok")).run()
        data = result.to_dict()

        assert data["text"] == "ok"
        assert data["state"] == "completed"
        assert data["tool_calls"] == []
        assert data["timings"]["predicted_n"] == 2
