from __future__ import annotations

import pytest

from converge.src.config import ConfigError, ControllerConfig, env_float, env_int, load_config


def test_load_config_defaults() -> None:
    config = load_config({})

    assert config == ControllerConfig()
    assert config.workers == 1
    assert config.max_retries == 5
    assert config.retry_base_delay == pytest.approx(0.005)
    assert config.retry_max_delay == pytest.approx(1000)


def test_load_config_reads_all_overrides() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": " shop ",
            "LABEL_SELECTOR": "app=web",
            "WORKERS": "4",
            "MAX_RETRIES": "10",
            "RETRY_BASE_DELAY_SECONDS": "0.1",
            "RETRY_MAX_DELAY_SECONDS": "60",
            "QUEUE_QPS": "50",
            "QUEUE_BURST": "500",
            "CACHE_SYNC_TIMEOUT_SECONDS": "120",
            "SHUTDOWN_TIMEOUT_SECONDS": "5",
            "HEALTH_PORT": "9090",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.namespace == "shop"
    assert config.label_selector == "app=web"
    assert config.workers == 4
    assert config.max_retries == 10
    assert config.retry_base_delay == pytest.approx(0.1)
    assert config.retry_max_delay == pytest.approx(60)
    assert config.queue_qps == pytest.approx(50)
    assert config.queue_burst == 500
    assert config.cache_sync_timeout == pytest.approx(120)
    assert config.shutdown_timeout == pytest.approx(5)
    assert config.health_port == 9090
    assert config.log_level == "DEBUG"


def test_load_config_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKERS", "3")

    assert load_config().workers == 3


def test_load_config_rejects_blank_namespace() -> None:
    with pytest.raises(ConfigError, match="WATCH_NAMESPACE"):
        load_config({"WATCH_NAMESPACE": "   "})


def test_load_config_rejects_inverted_backoff_bounds() -> None:
    with pytest.raises(ConfigError, match="RETRY_MAX_DELAY_SECONDS"):
        load_config({"RETRY_BASE_DELAY_SECONDS": "10", "RETRY_MAX_DELAY_SECONDS": "1"})


@pytest.mark.parametrize("value", ["0", "-1"])
def test_load_config_rejects_non_positive_qps(value: str) -> None:
    with pytest.raises(ConfigError, match="QUEUE_QPS"):
        load_config({"QUEUE_QPS": value})


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("WORKERS", "0"),
        ("WORKERS", "many"),
        ("MAX_RETRIES", "-1"),
        ("HEALTH_PORT", "70000"),
        ("QUEUE_BURST", "0"),
        ("CACHE_SYNC_TIMEOUT_SECONDS", "0"),
        ("RETRY_BASE_DELAY_SECONDS", "nan"),
        ("RETRY_MAX_DELAY_SECONDS", "inf"),
        ("LOG_LEVEL", "verbose"),
    ],
)
def test_load_config_rejects_invalid_values(name: str, value: str) -> None:
    with pytest.raises(ConfigError, match=name):
        load_config({name: value})


def test_config_error_is_a_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


def test_env_int_returns_default_when_not_set() -> None:
    assert env_int("SOME_INT", 7, env={}) == 7


def test_env_int_parses_negative_without_minimum() -> None:
    assert env_int("SOME_INT", 0, env={"SOME_INT": "-3"}) == -3


def test_env_int_raises_on_empty_string() -> None:
    with pytest.raises(ConfigError, match="must be an integer"):
        env_int("SOME_INT", 0, env={"SOME_INT": ""})


def test_env_float_bounds() -> None:
    assert env_float("SOME_FLOAT", 1.5, env={}) == pytest.approx(1.5)
    assert env_float("SOME_FLOAT", 1.5, env={"SOME_FLOAT": "2.25"}) == pytest.approx(2.25)
    with pytest.raises(ConfigError, match=">= 0"):
        env_float("SOME_FLOAT", 1.5, minimum=0, env={"SOME_FLOAT": "-0.5"})
    with pytest.raises(ConfigError, match="must be a number"):
        env_float("SOME_FLOAT", 1.5, env={"SOME_FLOAT": "soon"})
