import json

import pytest

from memindex import config as config_module


def _prepare_config(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    config_file = config_dir / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)
    return config_file


def test_load_settings_defaults(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)

    settings = config_module.load_settings()

    assert settings.enabled is True
    assert settings.sources == ("memory",)
    assert settings.provider == config_module.DEFAULT_PROVIDER
    assert settings.model == config_module.DEFAULT_MODEL
    assert settings.fallback == "none"
    assert settings.chunking.tokens == 400
    assert settings.chunking.overlap == 80
    assert settings.query.max_results == 6
    assert settings.query.min_score == pytest.approx(0.35)
    assert settings.query.hybrid.vector_weight == pytest.approx(0.7)
    assert settings.query.hybrid.text_weight == pytest.approx(0.3)
    assert settings.sync.sessions.delta_bytes == 100_000
    assert settings.sync.sessions.delta_messages == 50


def test_load_settings_merges_agent_override(tmp_path, monkeypatch):
    config_file = _prepare_config(tmp_path, monkeypatch)
    config_file.parent.mkdir(parents=True)
    config_file.write_text(
        json.dumps(
            {
                "provider": "gemini",
                "chunking": {"tokens": 200},
                "agents": {"ops": {"sources": ["memory", "sessions"], "chunking": {"overlap": 10}}},
            }
        )
    )

    main = config_module.load_settings("main")
    ops = config_module.load_settings("ops")

    assert main.sources == ("memory",)
    assert main.model == config_module.DEFAULT_GEMINI_MODEL
    assert ops.sources == ("memory", "sessions")
    assert ops.chunking.tokens == 200
    assert ops.chunking.overlap == 10


def test_settings_from_json_normalizes_weights():
    settings = config_module.settings_from_json(
        {"query": {"hybrid": {"vector_weight": 2, "text_weight": 2}}}
    )

    assert settings.query.hybrid.vector_weight == pytest.approx(0.5)
    assert settings.query.hybrid.text_weight == pytest.approx(0.5)


def test_settings_from_json_zero_weights_fall_back_to_defaults():
    settings = config_module.settings_from_json(
        {"query": {"hybrid": {"vector_weight": 0, "text_weight": 0}}}
    )

    assert settings.query.hybrid.vector_weight == pytest.approx(0.7)
    assert settings.query.hybrid.text_weight == pytest.approx(0.3)


def test_settings_from_json_clamps_overlap_below_tokens():
    settings = config_module.settings_from_json({"chunking": {"tokens": 10, "overlap": 50}})

    assert settings.chunking.tokens == 10
    assert settings.chunking.overlap == 9


def test_settings_from_json_rejects_unknown_source():
    with pytest.raises(ValueError, match="Unsupported memory source"):
        config_module.settings_from_json({"sources": ["memory", "email"]})


def test_settings_from_json_rejects_bad_provider():
    with pytest.raises(ValueError, match="Unsupported embedding provider"):
        config_module.settings_from_json({"provider": "cohere"})


def test_settings_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        config_module.settings_from_json("[1, 2]")


def test_settings_from_json_rejects_bool_for_int():
    with pytest.raises(ValueError, match="chunking.tokens"):
        config_module.settings_from_json({"chunking": {"tokens": True}})


def test_resolve_default_model_per_provider():
    assert config_module.resolve_default_model("gemini", None) == config_module.DEFAULT_GEMINI_MODEL
    assert (
        config_module.resolve_default_model("local", config_module.DEFAULT_MODEL)
        == config_module.DEFAULT_LOCAL_MODEL
    )
    assert config_module.resolve_default_model("openai", " custom ") == "custom"


def test_resolve_api_key_prefers_config_then_env(monkeypatch):
    monkeypatch.delenv(config_module.ENV_API_KEY, raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "env-openai")
    monkeypatch.setenv("GOOGLE_API_KEY", "env-google")

    assert config_module.resolve_api_key("configured", "openai") == "configured"
    assert config_module.resolve_api_key(None, "openai") == "env-openai"
    assert config_module.resolve_api_key(None, "gemini") == "env-google"
    assert config_module.resolve_api_key("ignored", "local") is None


def test_resolve_store_path_expands_agent_and_config_dir(tmp_path):
    settings = config_module.MemorySettings()

    with config_module.config_dir_context(tmp_path):
        path = config_module.resolve_store_path(settings, "ops")

    assert path == (tmp_path / "memory" / "ops.sqlite").resolve()


def test_settings_fingerprint_hides_secrets_but_tracks_changes():
    first = config_module.settings_from_json({"remote": {"api_key": "sk-one"}})
    second = config_module.settings_from_json({"remote": {"api_key": "sk-two"}})

    assert config_module.settings_fingerprint(first) != config_module.settings_fingerprint(second)
    assert config_module.settings_fingerprint(first) == config_module.settings_fingerprint(
        config_module.settings_from_json({"remote": {"api_key": "sk-one"}})
    )


def test_save_settings_round_trips(tmp_path, monkeypatch):
    config_file = _prepare_config(tmp_path, monkeypatch)
    settings = config_module.settings_from_json({"sources": ["sessions"], "fallback": "local"})

    config_module.save_settings(settings)
    stored = json.loads(config_file.read_text())
    loaded = config_module.load_settings()

    assert stored["sources"] == ["sessions"]
    assert loaded.sources == ("sessions",)
    assert loaded.fallback == "local"
