import pytest

from autothesis.config import Config, ConfigError, default_question_for_ticker, load_config


def test_defaults_from_empty_environment():
    config = load_config({})
    assert config.host == "127.0.0.1"
    assert config.port == 3000
    assert config.database_url == "sqlite://autothesis.db"
    assert config.openai_model == "gpt-4.1-mini"
    assert config.openai_base_url == "https://api.openai.com/v1"
    assert config.search_provider == "tavily"
    assert config.max_iterations == 3
    assert config.max_sources_per_iteration == 8
    assert config.max_concurrent_runs == 5
    assert config.scheduler_enabled is True
    assert config.scheduler_check_interval_secs == 60
    assert config.scheduler_max_concurrent_runs == 3
    assert config.scheduler_min_ticker_age_hours == 24
    assert config.openai_api_key == ""


def test_defaults_match_dataclass_defaults():
    assert load_config({}) == Config()


def test_address():
    assert load_config({}).address() == "127.0.0.1:3000"


def test_values_are_read_from_environment():
    config = load_config(
        {
            "APP_HOST": "0.0.0.0",
            "APP_PORT": "8080",
            "OPENAI_API_KEY": "placeholder",
            "MAX_ITERATIONS": "7",
            "SCHEDULER_ENABLED": "false",
            "SCHEDULER_MIN_TICKER_AGE_HOURS": "-5",
        }
    )
    assert config.host == "0.0.0.0"
    assert config.port == 8080
    assert config.address() == "0.0.0.0:8080"
    assert config.openai_api_key == "placeholder"
    assert config.max_iterations == 7
    assert config.scheduler_enabled is False
    assert config.scheduler_min_ticker_age_hours == -5


@pytest.mark.parametrize(
    "key,value,message",
    [
        ("APP_PORT", "70000", "APP_PORT must be a valid u16"),
        ("APP_PORT", "abc", "APP_PORT must be a valid u16"),
        ("APP_PORT", "-1", "APP_PORT must be a valid u16"),
        ("MAX_ITERATIONS", "x", "MAX_ITERATIONS must be a valid u32"),
        ("SCHEDULER_ENABLED", "yes", "SCHEDULER_ENABLED must be a valid boolean"),
        ("SCHEDULER_ENABLED", "True", "SCHEDULER_ENABLED must be a valid boolean"),
        (
            "SCHEDULER_MIN_TICKER_AGE_HOURS",
            "1.5",
            "SCHEDULER_MIN_TICKER_AGE_HOURS must be a valid i64",
        ),
    ],
)
def test_invalid_values_raise(key, value, message):
    with pytest.raises(ConfigError, match=message):
        load_config({key: value})


@pytest.mark.parametrize(
    "key",
    [
        "MAX_ITERATIONS",
        "MAX_SOURCES_PER_ITERATION",
        "MAX_CONCURRENT_RUNS",
        "SCHEDULER_CHECK_INTERVAL_SECS",
        "SCHEDULER_MAX_CONCURRENT_RUNS",
    ],
)
def test_zero_values_are_rejected(key):
    with pytest.raises(ConfigError, match=f"{key} must be at least 1"):
        load_config({key: "0"})


def test_config_error_is_value_error():
    with pytest.raises(ValueError):
        load_config({"APP_PORT": "nope"})


def test_default_question_mentions_ticker():
    question = default_question_for_ticker("MSFT")
    assert question.startswith("What is the current bull and bear case for MSFT,")
    assert question.endswith("for the valuation to make sense?")