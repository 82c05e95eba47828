"""Tests for strata.core.config."""

import httpx
import pytest

from strata.core.config import Config, env_float


class TestConfig:
    def test_defaults(self):
        c = Config()
        assert c.llm_provider == "ollama"
        assert c.promotion_threshold == 0.8
        assert c.min_sample_for_strategy == 10
        assert c.intent_cache_ttl_seconds == 86400.0
        assert c.strict_budget is False

    def test_from_data_dir(self, tmp_path):
        c = Config.from_data_dir(tmp_path)
        assert c.data_dir == tmp_path.resolve()
        assert c.db_path == tmp_path.resolve() / "strata.db"
        assert c.lock_dir == tmp_path.resolve() / "locks"

    def test_ensure_directories(self, tmp_path):
        c = Config.from_data_dir(tmp_path / "nested")
        c.ensure_directories()
        assert c.data_dir.is_dir()
        assert c.lock_dir.is_dir()

    def test_from_yaml(self, tmp_path):
        yaml_path = tmp_path / "strata.yaml"
        yaml_path.write_text(
            f"strata:\n"
            f"  data_dir: {tmp_path}\n"
            f"  promotion_threshold: 0.7\n"
            f"  ai_budget_daily_usd: 5\n"
            f"  decay_half_lives:\n"
            f"    post_success: 21\n"
            f"  dashboard_theme: dark\n",
            encoding="utf-8",
        )
        c = Config.from_yaml(yaml_path)
        assert c.promotion_threshold == 0.7
        assert c.ai_budget_daily_usd == 5
        assert c.decay_half_lives == {"post_success": 21}

    def test_from_yaml_top_level(self, tmp_path):
        yaml_path = tmp_path / "strata.yaml"
        yaml_path.write_text("min_sample_for_strategy: 4\n", encoding="utf-8")
        assert Config.from_yaml(yaml_path).min_sample_for_strategy == 4

    def test_from_yaml_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nonexistent.yaml")

    def test_from_yaml_not_a_mapping(self, tmp_path):
        yaml_path = tmp_path / "strata.yaml"
        yaml_path.write_text("strata: [1, 2]\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            Config.from_yaml(yaml_path)

    def test_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STRATA_STRICT_BUDGET", "yes")
        monkeypatch.setenv("STRATA_MIN_SAMPLE_FOR_STRATEGY", "12")
        monkeypatch.setenv("STRATA_MODEL_TIMEOUT_SECONDS", "7.5")
        c = Config.from_env(Config.from_data_dir(tmp_path))
        assert c.strict_budget is True
        assert c.min_sample_for_strategy == 12
        assert c.model_timeout_seconds == 7.5
        assert c.data_dir == tmp_path.resolve()

    def test_from_env_bad_value(self, monkeypatch):
        monkeypatch.setenv("STRATA_PATTERN_LOOKBACK_DAYS", "a month")
        with pytest.raises(ValueError):
            Config.from_env()

    def test_env_budget_defaults(self, monkeypatch):
        monkeypatch.setenv("STRATA_AI_BUDGET_DAILY_USD", "3.5")
        monkeypatch.setenv("STRATA_AI_BUDGET_MONTHLY_USD", "-1")
        c = Config()
        assert c.ai_budget_daily_usd == 3.5
        assert c.ai_budget_monthly_usd == 45.0

    def test_env_float(self, monkeypatch):
        monkeypatch.setenv("STRATA_X", "nan")
        assert env_float("STRATA_X", 1.5) == 1.5
        monkeypatch.setenv("STRATA_X", "0.25")
        assert env_float("STRATA_X", 1.5) == 0.25

    def test_to_dict(self):
        d = Config(llm_api_key="secret").to_dict()
        assert "data_dir" in d
        assert d["promotion_threshold"] == 0.8
        assert "llm_api_key" not in d
        assert "model_func" not in d

    @pytest.mark.parametrize(
        "field,value",
        [
            ("promotion_threshold", 1.5),
            ("candidate_min_confidence", -0.1),
            ("ai_budget_daily_usd", 0),
            ("min_sample_for_strategy", 0),
            ("decay_half_lives", {"post_success": 0}),
        ],
    )
    def test_validation(self, field, value):
        with pytest.raises(ValueError):
            Config(**{field: value})


class TestModelFunc:
    def test_custom_model_func(self):
        def my_func(messages, max_tokens):
            return None

        c = Config(model_func=my_func)
        assert c.get_model_func() is my_func

    def test_custom_provider_no_func(self):
        c = Config(llm_provider="custom")
        with pytest.raises(ValueError, match="no model_func was provided"):
            c.get_model_func()

    def test_unknown_provider(self):
        c = Config(llm_provider="alien")
        with pytest.raises(ValueError, match="Unknown llm_provider"):
            c.get_model_func()

    def test_ollama_call(self, monkeypatch):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.read()
            return httpx.Response(
                200,
                json={
                    "message": {"content": " hi there "},
                    "prompt_eval_count": 12,
                    "eval_count": 3,
                },
            )

        real_client = httpx.Client
        monkeypatch.setattr(
            httpx,
            "Client",
            lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw),
        )
        func = Config(llm_model="llama3.2", llm_base_url="http://ollama:11434/").get_model_func()
        response = func([{"role": "user", "content": "hello"}], 64)
        assert seen["url"] == "http://ollama:11434/api/chat"
        assert b'"num_predict": 64' in seen["body"] or b'"num_predict":64' in seen["body"]
        assert response.text == "hi there"
        assert response.provider == "ollama"
        assert (response.input_tokens, response.output_tokens) == (12, 3)

    def test_ollama_http_error(self, monkeypatch):
        real_client = httpx.Client
        monkeypatch.setattr(
            httpx,
            "Client",
            lambda **kw: real_client(
                transport=httpx.MockTransport(lambda r: httpx.Response(500)), **kw
            ),
        )
        func = Config().get_model_func()
        with pytest.raises(httpx.HTTPStatusError):
            func([{"role": "user", "content": "hello"}], 64)
