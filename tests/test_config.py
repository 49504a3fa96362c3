from farmassist.config import _split_tokens, get_gemini_api_keys, load_settings


def test_split_tokens_keeps_first_word_per_line():
    raw = "key-one  # primary\nkey-two,key-three\n\n"
    assert _split_tokens(raw) == ["key-one", "key-two", "key-three"]


def test_gemini_keys_prefer_plural_variable(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEYS", "a,b")
    monkeypatch.setenv("GEMINI_API_KEY", "single")
    assert get_gemini_api_keys() == ["a", "b"]
    monkeypatch.delenv("GEMINI_API_KEYS")
    assert get_gemini_api_keys() == ["single"]


def test_load_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("GROQ_API_KEY", "gsk_env")
    monkeypatch.setenv("GEMINI_MAX_ATTEMPTS", "0")
    monkeypatch.setenv("PROVIDER_TIMEOUT_SECONDS", "not-a-number")
    monkeypatch.setenv("HUGGINGFACE_MODELS", "org/model-a\norg/model-b")
    monkeypatch.setenv("ANALYSIS_DB_PATH", str(tmp_path / "x.db"))

    settings = load_settings()

    assert settings.groq_api_key == "gsk_env"
    assert settings.gemini_max_attempts == 1
    assert settings.provider_timeout_seconds == 60.0
    assert settings.huggingface_models == ["org/model-a", "org/model-b"]
    assert settings.db_path.endswith("x.db")
