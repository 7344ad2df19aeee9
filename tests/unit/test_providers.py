import json
from types import SimpleNamespace

import numpy as np
import pytest

from memindex.embeddings import BatchOptions, BatchRequest
from memindex.errors import EmbeddingError, EmbeddingTimeoutError
from memindex.providers import gemini as gemini_provider
from memindex.providers import local as local_provider
from memindex.providers import openai as openai_provider


class FakeOpenAIEmbeddings:
    def __init__(self, batches):
        self._batches = list(batches)
        self.calls = []

    def create(self, *, model, input):
        self.calls.append(list(input))
        vectors = self._batches.pop(0)
        data = [
            SimpleNamespace(embedding=vector, index=idx)
            for idx, vector in reversed(list(enumerate(vectors)))
        ]
        return SimpleNamespace(data=data)


def _install_openai(monkeypatch, batches):
    embeddings = FakeOpenAIEmbeddings(batches)
    captured = {}

    class FakeClient:
        def __init__(self, **kwargs):
            captured.update(kwargs)
            self.embeddings = embeddings

    monkeypatch.setattr(openai_provider, "OpenAI", FakeClient)
    return embeddings, captured


def test_openai_provider_chunks_requests_and_orders_by_index(monkeypatch):
    embeddings, captured = _install_openai(
        monkeypatch, [[[1.0, 0.0], [0.0, 1.0]], [[0.5, 0.5]]]
    )

    provider = openai_provider.OpenAIEmbeddingProvider(
        model_name="text-embedding-3-small",
        api_key="sk-test",
        headers={"X-Team": "ops"},
        chunk_size=2,
    )
    vectors = provider.embed_batch(["a", "b", "c"])

    assert embeddings.calls == [["a", "b"], ["c"]]
    assert vectors.shape == (3, 2)
    assert np.allclose(vectors[0], [1.0, 0.0])
    assert np.allclose(vectors[2], [0.5, 0.5])
    assert captured["base_url"] == openai_provider.DEFAULT_OPENAI_BASE_URL
    assert captured["default_headers"] == {"X-Team": "ops"}


def test_openai_provider_requires_api_key():
    with pytest.raises(EmbeddingError):
        openai_provider.OpenAIEmbeddingProvider(model_name="m", api_key=None)


def test_openai_provider_empty_input(monkeypatch):
    embeddings, _ = _install_openai(monkeypatch, [])
    provider = openai_provider.OpenAIEmbeddingProvider(model_name="m", api_key="sk-test")

    assert provider.embed_batch([]).shape == (0, 0)
    assert embeddings.calls == []


def test_openai_provider_no_embeddings(monkeypatch):
    _install_openai(monkeypatch, [[]])
    provider = openai_provider.OpenAIEmbeddingProvider(model_name="m", api_key="sk-test")

    with pytest.raises(EmbeddingError, match="no embeddings"):
        provider.embed_query("hello")


class FakeBatchClient:
    def __init__(self, statuses, output_lines):
        self._statuses = list(statuses)
        self._output = "\n".join(json.dumps(line) for line in output_lines)
        self.uploaded = None
        self.retrieved = 0
        self.files = SimpleNamespace(create=self._upload, content=self._content)
        self.batches = SimpleNamespace(create=self._create, retrieve=self._retrieve)

    def _upload(self, *, file, purpose):
        self.uploaded = file[1].decode("utf-8")
        return SimpleNamespace(id="file-in")

    def _create(self, **_kwargs):
        return self._batch()

    def _retrieve(self, batch_id):
        self.retrieved += 1
        return self._batch()

    def _batch(self):
        status = self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]
        output = "file-out" if status == "completed" else None
        return SimpleNamespace(id="batch-1", status=status, output_file_id=output)

    def _content(self, file_id):
        return SimpleNamespace(text=self._output)


def _batch_line(custom_id, vector):
    return {
        "custom_id": custom_id,
        "response": {"status_code": 200, "body": {"data": [{"embedding": vector}]}},
    }


def _options(**overrides):
    values = {"wait": True, "concurrency": 1, "poll_interval_ms": 0, "timeout_ms": 5_000}
    values.update(overrides)
    return BatchOptions(**values)


def test_openai_batch_runner_polls_until_complete():
    client = FakeBatchClient(
        ["validating", "in_progress", "completed"],
        [_batch_line("a", [1.0, 0.0]), _batch_line("b", [0.0, 1.0])],
    )
    runner = openai_provider.OpenAIBatchRunner(client, model="m")

    results = runner.run(
        [BatchRequest(custom_id="a", text="alpha"), BatchRequest(custom_id="b", text="beta")],
        _options(),
    )

    assert client.retrieved == 2
    assert set(results) == {"a", "b"}
    assert np.allclose(results["b"], [0.0, 1.0])
    first_request = json.loads(client.uploaded.splitlines()[0])
    assert first_request["url"] == openai_provider.OPENAI_BATCH_ENDPOINT
    assert first_request["body"] == {"model": "m", "input": "alpha"}


def test_openai_batch_runner_reports_failed_items():
    client = FakeBatchClient(
        ["completed"],
        [{"custom_id": "a", "error": {"message": "too long"}}],
    )
    runner = openai_provider.OpenAIBatchRunner(client, model="m")

    with pytest.raises(EmbeddingError, match="too long"):
        runner.run([BatchRequest(custom_id="a", text="alpha")], _options())


def test_openai_batch_runner_requires_wait_for_pending_jobs():
    client = FakeBatchClient(["in_progress"], [])
    runner = openai_provider.OpenAIBatchRunner(client, model="m")

    with pytest.raises(EmbeddingError, match="wait is disabled"):
        runner.run([BatchRequest(custom_id="a", text="alpha")], _options(wait=False))


def test_openai_batch_runner_times_out():
    client = FakeBatchClient(["in_progress"], [])
    runner = openai_provider.OpenAIBatchRunner(client, model="m")

    with pytest.raises(EmbeddingTimeoutError):
        runner.run([BatchRequest(custom_id="a", text="alpha")], _options(timeout_ms=0))


def test_openai_batch_runner_flags_missing_outputs():
    client = FakeBatchClient(["completed"], [_batch_line("a", [1.0])])
    runner = openai_provider.OpenAIBatchRunner(client, model="m")

    with pytest.raises(EmbeddingError, match="missing from batch output"):
        runner.run(
            [BatchRequest(custom_id="a", text="x"), BatchRequest(custom_id="b", text="y")],
            _options(),
        )


def _install_gemini(monkeypatch, responses):
    calls = []

    def embed_content(*, model, contents, config):
        calls.append((list(contents), config.task_type))
        vectors = responses.pop(0)
        return SimpleNamespace(embeddings=[SimpleNamespace(values=v) for v in vectors])

    captured = {}

    def fake_client(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(models=SimpleNamespace(embed_content=embed_content))

    monkeypatch.setattr(gemini_provider.genai, "Client", fake_client)
    return calls, captured


def test_gemini_provider_uses_task_types(monkeypatch):
    calls, captured = _install_gemini(monkeypatch, [[[1.0, 0.0]], [[0.0, 1.0], [1.0, 1.0]]])
    provider = gemini_provider.GeminiEmbeddingProvider(api_key="g-key")

    query = provider.embed_query("q")
    docs = provider.embed_batch(["a", "b"])

    assert np.allclose(query, [1.0, 0.0])
    assert docs.shape == (2, 2)
    assert calls == [(["q"], "RETRIEVAL_QUERY"), (["a", "b"], "RETRIEVAL_DOCUMENT")]
    assert "http_options" not in captured


def test_gemini_provider_splits_large_batches(monkeypatch):
    texts = [f"t{idx}" for idx in range(gemini_provider._GEMINI_MAX_INPUTS + 1)]
    calls, _ = _install_gemini(
        monkeypatch,
        [[[1.0]] * gemini_provider._GEMINI_MAX_INPUTS, [[2.0]]],
    )
    provider = gemini_provider.GeminiEmbeddingProvider(api_key="g-key")

    vectors = provider.embed_batch(texts)

    assert [len(batch) for batch, _ in calls] == [gemini_provider._GEMINI_MAX_INPUTS, 1]
    assert vectors.shape == (len(texts), 1)


def test_gemini_provider_rejects_placeholder_key():
    with pytest.raises(EmbeddingError):
        gemini_provider.GeminiEmbeddingProvider(api_key="your_api_key_here")


def test_gemini_provider_passes_base_url_and_headers(monkeypatch):
    _, captured = _install_gemini(monkeypatch, [])

    gemini_provider.GeminiEmbeddingProvider(
        api_key="g-key",
        base_url="https://proxy.example/v1beta/",
        headers={"X-Team": "ops"},
    )

    options = captured["http_options"]
    assert options.base_url == "https://proxy.example/v1beta/"
    assert options.headers == {"X-Team": "ops"}


def test_format_genai_error_messages():
    class FakeError(Exception):
        def __init__(self, message, code=None):
            super().__init__(message)
            self.message = message
            self.code = code

    invalid = gemini_provider._format_genai_error(FakeError("API key not valid", code=400))
    general = gemini_provider._format_genai_error(FakeError("quota exceeded"))

    assert invalid.status_code == 400
    assert str(invalid).startswith("Gemini embedding request failed:")
    assert "quota exceeded" in str(general)


class FakeTextEmbedding:
    instances = []

    def __init__(self, *, model_name, cache_dir, cuda):
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.cuda = cuda
        FakeTextEmbedding.instances.append(self)

    def embed(self, texts):
        for text in texts:
            yield [3.0, 4.0] if text else [0.0, 0.0]

    def query_embed(self, texts):
        for _text in texts:
            yield [0.0, 2.0]


def test_local_provider_normalizes_vectors(monkeypatch, tmp_path):
    monkeypatch.setattr(local_provider, "_load_fastembed", lambda: FakeTextEmbedding)

    provider = local_provider.LocalEmbeddingProvider(
        model_name="BAAI/bge-small-en-v1.5",
        cache_dir=str(tmp_path / "models"),
    )
    vectors = provider.embed_batch(["hello", ""])
    query = provider.embed_query("hello")

    assert (tmp_path / "models").is_dir()
    assert np.allclose(vectors[0], [0.6, 0.8])
    assert np.allclose(vectors[1], [0.0, 0.0])
    assert np.allclose(query, [0.0, 1.0])


def test_local_provider_requires_dependency(monkeypatch):
    def _missing():
        raise EmbeddingError("fastembed is not installed")

    monkeypatch.setattr(local_provider, "_load_fastembed", _missing)

    with pytest.raises(EmbeddingError, match="fastembed"):
        local_provider.LocalEmbeddingProvider(model_name="m")


def test_local_provider_wraps_load_failures(monkeypatch, tmp_path):
    class Broken:
        def __init__(self, **_kwargs):
            raise RuntimeError("onnx session failed")

    monkeypatch.setattr(local_provider, "_load_fastembed", lambda: Broken)

    with pytest.raises(EmbeddingError, match="onnx session failed"):
        local_provider.LocalEmbeddingProvider(model_name="m", cache_dir=str(tmp_path))


def test_local_provider_registers_custom_model(monkeypatch, tmp_path):
    attempts = []

    class PickyEmbedding(FakeTextEmbedding):
        def __init__(self, **kwargs):
            attempts.append(kwargs["model_name"])
            if len(attempts) == 1:
                raise ValueError("Model x is not supported in TextEmbedding")
            super().__init__(**kwargs)

    registered = []
    monkeypatch.setattr(local_provider, "_load_fastembed", lambda: PickyEmbedding)
    monkeypatch.setattr(
        local_provider,
        "_register_custom_model",
        lambda cls, name: registered.append(name) or True,
    )

    provider = local_provider.LocalEmbeddingProvider(
        model_name="intfloat/multilingual-e5-small",
        cache_dir=str(tmp_path),
    )

    assert registered == ["intfloat/multilingual-e5-small"]
    assert len(attempts) == 2
    assert provider.model == "intfloat/multilingual-e5-small"
