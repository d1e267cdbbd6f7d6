"""
Settings parsing and validation
"""
import pytest

from ntpu_assistant.core.config import Settings, parse_duration
from ntpu_assistant.core.errors import ConfigError

pytestmark = pytest.mark.unit


class TestParseDuration:
    @pytest.mark.parametrize("raw,expected", [
        (30, 30.0),
        ("45", 45.0),
        ("168h", 168 * 3600.0),
        ("10m", 600.0),
        ("1h30m", 5400.0),
        ("500ms", 0.5),
    ])
    def test_accepts_seconds_and_units(self, raw, expected):
        assert parse_duration(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", ["", "abc", "10x", "h10"])
    def test_rejects_garbage(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)


class TestSettings:
    def test_defaults(self, tmp_path):
        settings = Settings(DATA_DIR=str(tmp_path))
        assert settings.PORT == 10000
        assert settings.CACHE_TTL == 168 * 3600
        assert settings.warmup_modules == ["contact", "program", "course", "syllabus"]
        assert settings.DATABASE_PATH.endswith("cache.db")
        assert settings.base_urls["lms"][0] == "http://120.126.197.52"

    def test_duration_strings_from_kwargs(self, tmp_path):
        settings = Settings(DATA_DIR=str(tmp_path), CACHE_TTL="24h", WARMUP_GRACE_PERIOD="5m")
        assert settings.CACHE_TTL == 86400
        assert settings.WARMUP_GRACE_PERIOD == 300

    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NTPU_PORT", "8080")
        monkeypatch.setenv("NTPU_DATA_DIR", str(tmp_path))
        assert Settings().PORT == 8080

    def test_llm_providers_need_key(self, tmp_path):
        settings = Settings(DATA_DIR=str(tmp_path), LLM_ENABLED=True, GROQ_API_KEY="k")
        assert settings.llm_providers == ["groq"]
        assert settings.llm_configured
        conf = settings.provider_settings("groq")
        assert conf["api_key"] == "k"
        assert conf["models"][0] == "llama-3.3-70b-versatile"

    def test_llm_not_configured_without_flag(self, tmp_path):
        settings = Settings(DATA_DIR=str(tmp_path), GROQ_API_KEY="k")
        assert not settings.llm_configured

    def test_validate_runtime_ok(self, tmp_path):
        Settings(DATA_DIR=str(tmp_path)).validate_runtime()

    @pytest.mark.parametrize("overrides", [
        {"PORT": 0},
        {"LOG_LEVEL": "verbose"},
        {"SOFT_TTL": 999 * 3600.0},
        {"WARMUP_HOUR": 24},
        {"WARMUP_MODULES": "contact,unknown"},
        {"LMS_BASE_URLS": ""},
        {"TIMEZONE": "Mars/Olympus"},
    ])
    def test_validate_runtime_rejects(self, tmp_path, overrides):
        settings = Settings(DATA_DIR=str(tmp_path), **overrides)
        with pytest.raises(ConfigError):
            settings.validate_runtime()
