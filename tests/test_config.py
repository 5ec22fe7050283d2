import pytest

from config import AppConfig, OperationStatus, VideoAspectRatio
from lanes.pool import default_record_from_env


def test_settings_come_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("FLOW_MAX_RETRIES", "3")
    monkeypatch.setenv("FLOW_POLL_INTERVAL", "2.5")
    monkeypatch.setenv("FLOW_SEND_ANALYTICS", "true")
    monkeypatch.setenv("FLOW_TOKENS_FILE", str(tmp_path / "lanes.json"))

    config = AppConfig()

    assert config.max_retries == 3
    assert config.poll_interval_sec == 2.5
    assert config.send_analytics is True
    assert config.tokens_file == tmp_path / "lanes.json"


def test_bad_number_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("FLOW_DEDUP_WINDOW_MS", "soon")
    assert AppConfig().dedup_window_ms == 3000


def test_invalid_values_are_rejected():
    with pytest.raises(ValueError):
        AppConfig(max_retries=-1)
    with pytest.raises(ValueError):
        AppConfig(poll_max_attempts=0)


def test_backoff_delay_is_capped():
    config = AppConfig(backoff_base_ms=1000, backoff_cap_ms=32000)
    assert [config.backoff_delay_ms(n) for n in range(7)] == [1000, 2000, 4000, 8000, 16000, 32000, 32000]


def test_operation_status_translation():
    assert OperationStatus.from_provider("MEDIA_GENERATION_STATUS_ACTIVE") == OperationStatus.ACTIVE
    assert OperationStatus.from_provider("MEDIA_GENERATION_STATUS_SOMETHING_NEW") == OperationStatus.PENDING
    assert OperationStatus.from_provider(None) == OperationStatus.PENDING
    assert OperationStatus.SUCCESSFUL.to_provider() == "MEDIA_GENERATION_STATUS_SUCCESSFUL"
    assert OperationStatus.FAILED.is_terminal and not OperationStatus.ACTIVE.is_terminal


def test_image_ratio_follows_video_ratio():
    assert VideoAspectRatio.LANDSCAPE.image_ratio.startswith("IMAGE_")


def test_default_lane_from_environment(monkeypatch):
    monkeypatch.setenv("FLOW_DEFAULT_LANE", "env-lane")
    monkeypatch.setenv("FLOW_COOKIES", "sid=env")
    monkeypatch.setenv("FLOW_BEARER_TOKEN", "Bearer env-token")
    monkeypatch.delenv("FLOW_PROXY", raising=False)

    record = default_record_from_env()

    assert record.name == "env-lane"
    assert record.cookies == "sid=env"
    assert record.bearer_token == "env-token"
    assert record.proxy is None
