import asyncio

import pytest

from session_gateway.clients.base import format_chat_id
from session_gateway.config.gateway_config import GatewayConfig, get_config, reset_config
from session_gateway.core.errors import (
    AuthRejectedError,
    ErrorRecord,
    FailureClass,
    InitTimeoutError,
    SessionNotReadyError,
    WatchdogStuckError,
    classify_failure,
    is_transport_failure,
)
from session_gateway.core.retry_controller import BackoffGrowth
from session_gateway.core.secure_logging import mask_phone_number, sanitize_for_log


@pytest.mark.parametrize(
    "error,expected",
    [
        (RuntimeError("Protocol error (Runtime.callFunctionOn): Session closed."), FailureClass.SESSION_CLOSED),
        (RuntimeError("Target page, context or browser has been closed"), FailureClass.SESSION_CLOSED),
        (InitTimeoutError(300), FailureClass.TIMEOUT),
        (asyncio.TimeoutError(), FailureClass.TIMEOUT),
        (AuthRejectedError("restore failed"), FailureClass.AUTH_FAILURE),
        (WatchdogStuckError(180), FailureClass.OTHER),
        (ValueError("invalid wid"), FailureClass.OTHER),
    ],
)
def test_classify_failure(error, expected):
    assert classify_failure(error) is expected


def test_init_timeout_message_matches_minutes():
    assert str(InitTimeoutError(300)) == "Initialization timed out after 5 minutes"


def test_error_record_from_exception():
    record = ErrorRecord.from_exception(RuntimeError("Session closed"))

    assert record.failure_class is FailureClass.SESSION_CLOSED
    assert record.error_type == "RuntimeError"
    assert record.to_dict()["failure_class"] == "session_closed"


def test_not_ready_is_retryable_503():
    assert SessionNotReadyError.http_status == 503
    assert SessionNotReadyError.retryable is True
    assert is_transport_failure("browser has disconnected") is True
    assert is_transport_failure("invalid wid") is False


@pytest.mark.parametrize(
    "number,expected",
    [
        ("+1 (555) 123-4567", "15551234567@c.us"),
        ("15551234567@c.us", "15551234567@c.us"),
        ("  447700900123 ", "447700900123@c.us"),
    ],
)
def test_format_chat_id(number, expected):
    assert format_chat_id(number) == expected


def test_log_helpers():
    assert mask_phone_number("15551234567@c.us") == "*******4567@c.us"
    assert mask_phone_number("123") == "****"
    assert sanitize_for_log("line\nbreak") == "linebreak"
    assert sanitize_for_log("x" * 10, max_len=4) == "xxxx..."


def test_config_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("GATEWAY_ENV", "production")
    monkeypatch.setenv("AUTH_DIR", str(tmp_path / "creds"))
    monkeypatch.setenv("CLIENT_ID", "bot-7")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("RETRY_GROWTH", "multiplicative")
    monkeypatch.delenv("REAPER_ENABLED", raising=False)
    monkeypatch.delenv("BROWSER_EXECUTABLE", raising=False)

    config = GatewayConfig()
    policy = config.retry_policy()

    assert config.is_production is True
    assert config.session_dir == tmp_path / "creds" / "session-bot-7"
    assert config.reaper_enabled is True
    assert config.browser_executable == "/usr/bin/google-chrome-stable"
    assert policy.max_attempts == 7
    assert policy.growth is BackoffGrowth.MULTIPLICATIVE
    assert policy.failure_class_delays[FailureClass.TIMEOUT] == 15.0


def test_bad_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("GATEWAY_ENV", "staging")
    monkeypatch.setenv("PORT", "not-a-port")
    monkeypatch.setenv("RETRY_BASE_DELAY", "-3")
    monkeypatch.setenv("RETRY_GROWTH", "exponential-ish")
    monkeypatch.delenv("REAPER_ENABLED", raising=False)

    config = GatewayConfig()

    assert config.environment == "development"
    assert config.port == 3000
    assert config.retry_base_delay == 5.0
    assert config.retry_growth == "linear"
    assert config.reaper_enabled is False


def test_get_config_is_cached_until_reset(monkeypatch):
    monkeypatch.setenv("CLIENT_ID", "first")
    first = get_config()
    monkeypatch.setenv("CLIENT_ID", "second")

    assert get_config() is first
    reset_config()
    assert get_config().client_id == "second"


def test_main_loads_dotenv_before_reading_config(monkeypatch, tmp_path):
    from session_gateway import main as gateway_main

    for name in ("PORT", "GATEWAY_ENV"):
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    (tmp_path / ".env").write_text("PORT=4321\nGATEWAY_ENV=production\n")
    monkeypatch.chdir(tmp_path)

    served = {}

    def _fake_run(app, host, port, **kwargs):
        served.update(app=app, port=port)

    monkeypatch.setattr(gateway_main, "configure_logging", lambda level: None)
    monkeypatch.setattr(gateway_main, "uvicorn", type("FakeUvicorn", (), {"run": staticmethod(_fake_run)}))

    gateway_main.main([])

    assert served["port"] == 4321
    assert get_config().is_production is True
    assert served["app"].state.manager.config.port == 4321
