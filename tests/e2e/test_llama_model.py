"""
End-to-end tests against a real GGUF model.

Set POCKET_LLAMA_TEST_MODEL to a small instruct model to run them, e.g.
qwen2.5-0.5b-instruct-q4_k_m.gguf. They are skipped otherwise.

Run with: POCKET_LLAMA_TEST_MODEL=models/qwen.gguf pytest -m e2e -v
"""

import json
import os
import threading
from pathlib import Path

import pytest

from pocket_llama import init_llama, load_llama_model_info
from pocket_llama.errors import ConcurrencyError
from pocket_llama.validation import validate_document

MODEL_PATH = os.environ.get("POCKET_LLAMA_TEST_MODEL")

FIXTURES_DIR = Path(__file__).parent.parent / "fixtures"
with open(FIXTURES_DIR / "schemas" / "person.json") as f:
    PERSON_SCHEMA = json.load(f)
with open(FIXTURES_DIR / "schemas" / "articles.json") as f:
    ARTICLES_SCHEMA = json.load(f)
with open(FIXTURES_DIR / "prompts" / "prompts.json") as f:
    PROMPTS = json.load(f)

pytestmark = [
    pytest.mark.e2e,
    pytest.mark.slow,
    pytest.mark.skipif(not MODEL_PATH, reason="POCKET_LLAMA_TEST_MODEL is not set"),
]


def schema_format(schema):
    return {"type": "json_schema", "json_schema": {"schema": schema}}


@pytest.fixture(scope="module")
def llama():
    session = init_llama({"model": MODEL_PATH, "n_ctx": 2048, "embedding": True})
    yield session
    session.release()


class TestModelInfo:
    """Test reading metadata from the model file."""

    def test_info(self):
        """Test that basic metadata is present"""
        info = load_llama_model_info(MODEL_PATH)

        assert info["n_vocab"] > 0
        assert info["n_layer"] > 0
        assert info["size"] > 0


class TestStructuredOutput:
    """Test schema-constrained generation."""

    def test_person_record(self, llama):
        """Test that a nested person record parses and validates"""
        result = llama.completion({
            "messages": [{"role": "user", "content": PROMPTS["person"][1] + " Answer in JSON."}],
            "response_format": schema_format(PERSON_SCHEMA),
            "temperature": 0,
            "max_tokens": 256,
        })

        data = json.loads(result.text)
        assert "name" in data
        assert isinstance(data["age"], int)

    def test_articles_list(self, llama):
        """Test that every article uses an allowed status"""
        result = llama.completion({
            "messages": [{"role": "user", "content": PROMPTS["articles"][0] + " Answer in JSON."}],
            "response_format": schema_format(ARTICLES_SCHEMA),
            "temperature": 0,
            "max_tokens": 384,
        })

        if result.finish_reason == "length":
            pytest.skip("Model did not finish the list within max_tokens")
        articles = json.loads(result.text)
        assert all(a["status"] in ("draft", "published", "archived") for a in articles)

    def test_structural_validity(self, llama):
        """Test that generated output passes structural validation"""
        result = llama.completion({
            "prompt": "A JSON profile for Alice, age 28:\n",
            "grammar": PERSON_SCHEMA,
            "temperature": 0.7,
            "seed": 42,
            "max_tokens": 200,
        })

        report = validate_document(result.text, PERSON_SCHEMA)
        structural = [v for v in report.violations if v.validator in ("json", "type", "required")]
        assert structural == []


class TestSessionOperations:
    """Test the remaining operations on a real model."""

    def test_tokenize_round_trip(self, llama):
        """Test that detokenize inverts tokenize"""
        text = "The quick brown fox"
        assert llama.detokenize(llama.tokenize(text)).strip() == text

    def test_embedding(self, llama):
        """Test that the embedding is L2-normalised"""
        vector = llama.embedding("hello world")["embedding"]
        assert sum(x * x for x in vector) == pytest.approx(1.0, rel=1e-3)

    def test_stop_and_concurrency(self, llama):
        """Test stopping a long completion and the concurrency guard"""
        chunks = []
        started = threading.Event()

        def on_token(chunk):
            chunks.append(chunk)
            started.set()

        outcome = {}
        worker = threading.Thread(
            target=lambda: outcome.update(result=llama.completion(
                {"prompt": "Count from one to one thousand:", "max_tokens": 1000}, on_token=on_token
            ))
        )
        worker.start()
        assert started.wait(60)

        with pytest.raises(ConcurrencyError):
            llama.completion({"prompt": "Hi"})

        llama.stop_completion()
        worker.join(60)
        assert outcome["result"].finish_reason == "cancelled"

    def test_session_file(self, llama, tmp_path):
        """Test saving and restoring evaluation state"""
        llama.completion({"prompt": "Remember the number 7.", "max_tokens": 4})
        path = str(tmp_path / "state.session")

        assert llama.save_session(path) is True
        assert llama.load_session(path) is True
