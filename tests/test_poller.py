import asyncio

import httpx
import pytest

from config import AUTH_SESSION_URL, CHECK_STATUS_URL, PollOutcome
from conftest import op_entry, operations_response
from error_handler import TokenExpired
from lanes.auth import TokenRefresher
from lanes.poller import StatusPoller
from models import CredentialRecord, Operation


@pytest.fixture
def poller(executor, test_config, fake_sleep):
    return StatusPoller(executor, TokenRefresher(executor, test_config), test_config, sleep=fake_sleep)


def _ops(*names):
    return [Operation(operation_name=name, scene_id="scene-1") for name in names]


def test_pending_active_successful_stops_after_three_ticks(poller, provider, lane_a, sleeps):
    provider.add(
        CHECK_STATUS_URL,
        operations_response(op_entry("op-1", "PENDING")),
        operations_response(op_entry("op-1", "ACTIVE")),
        operations_response(op_entry("op-1", "SUCCESSFUL", media="media-1", url="https://v/1.mp4")),
    )

    result = asyncio.run(poller.poll(_ops("op-1"), lane_a))

    assert result.outcome == PollOutcome.SUCCESSFUL
    assert result.attempts == 3
    assert result.selected_media_id == "media-1"
    assert result.video_urls == ["https://v/1.mp4"]
    assert len(provider.calls(CHECK_STATUS_URL)) == 3
    assert sleeps == [10.0, 10.0]


def test_high_traffic_failures_are_retried_with_longer_wait(poller, provider, lane_a, sleeps):
    provider.add(
        CHECK_STATUS_URL,
        operations_response(op_entry("op-1", "FAILED", error="PUBLIC_ERROR_HIGH_TRAFFIC")),
        operations_response(op_entry("op-1", "FAILED", error="PUBLIC_ERROR_HIGH_TRAFFIC")),
        operations_response(op_entry("op-1", "SUCCESSFUL", media="media-1")),
    )

    result = asyncio.run(poller.poll(_ops("op-1"), lane_a))

    assert result.success
    assert result.attempts == 3
    assert result.selected_media_id == "media-1"
    assert sleeps == [20.0, 20.0]


def test_status_request_carries_provider_status_strings(poller, provider, lane_a):
    provider.add(CHECK_STATUS_URL, operations_response(op_entry("op-1", "SUCCESSFUL", media="m")))

    asyncio.run(poller.poll(_ops("op-1"), lane_a))

    body = provider.bodies(CHECK_STATUS_URL)[0]
    assert body == {"operations": [{
        "operation": {"name": "op-1"},
        "sceneId": "scene-1",
        "status": "MEDIA_GENERATION_STATUS_PENDING",
    }]}


def test_first_success_wins_and_all_urls_are_collected(poller, provider, lane_a):
    provider.add(
        CHECK_STATUS_URL,
        operations_response(
            op_entry("op-1", "SUCCESSFUL", media="media-1", url="https://v/1.mp4"),
            op_entry("op-2", "ACTIVE"),
        ),
        operations_response(
            op_entry("op-1", "SUCCESSFUL", media="media-1", url="https://v/1.mp4"),
            op_entry("op-2", "SUCCESSFUL", media="media-2", url="https://v/2.mp4"),
        ),
    )

    result = asyncio.run(poller.poll(_ops("op-1", "op-2"), lane_a))

    assert result.selected_media_id == "media-1"
    assert result.video_urls == ["https://v/1.mp4", "https://v/2.mp4"]
    assert result.success_count == 2
    assert result.attempts == 2


def test_one_success_one_failure_completes(poller, provider, lane_a):
    provider.add(
        CHECK_STATUS_URL,
        operations_response(
            op_entry("op-1", "FAILED", error="INTERNAL"),
            op_entry("op-2", "SUCCESSFUL", media="media-2"),
        ),
    )

    result = asyncio.run(poller.poll(_ops("op-1", "op-2"), lane_a))

    assert result.success
    assert result.selected_media_id == "media-2"
    assert (result.success_count, result.failure_count) == (1, 1)


def test_all_variants_failed(poller, provider, lane_a):
    provider.add(
        CHECK_STATUS_URL,
        operations_response(op_entry("op-1", "FAILED", error="UNSAFE_GENERATION")),
    )

    result = asyncio.run(poller.poll(_ops("op-1"), lane_a))

    assert result.outcome == PollOutcome.FAILED
    assert result.attempts == 1
    assert result.selected_media_id is None


def test_attempt_budget_exhausted_times_out(poller, provider, lane_a, sleeps):
    provider.add(CHECK_STATUS_URL, operations_response(op_entry("op-1", "ACTIVE")))

    result = asyncio.run(poller.poll(_ops("op-1"), lane_a, max_attempts=4))

    assert result.outcome == PollOutcome.TIMED_OUT
    assert result.attempts == 4
    assert len(sleeps) == 3


def test_failed_tick_is_logged_and_polling_continues(poller, provider, lane_a):
    provider.add(
        CHECK_STATUS_URL,
        httpx.Response(500, text="backend error"),
        operations_response(op_entry("op-1", "SUCCESSFUL", media="media-1")),
    )

    result = asyncio.run(poller.poll(_ops("op-1"), lane_a))

    assert result.success
    assert result.attempts == 2


def test_expired_token_stops_polling(poller, provider, lane_a):
    provider.add(CHECK_STATUS_URL, httpx.Response(401, json={}))

    with pytest.raises(TokenExpired):
        asyncio.run(poller.poll(_ops("op-1"), lane_a))

    assert len(provider.calls(CHECK_STATUS_URL)) == 1


def test_check_status_reads_media_from_top_level_field(poller, provider, lane_a):
    entry = op_entry("op-1", "SUCCESSFUL")
    entry["mediaGenerationId"] = "media-top"
    provider.add(CHECK_STATUS_URL, operations_response(entry))

    operations = asyncio.run(poller.check_status(_ops("op-1"), lane_a))

    assert operations[0].media_id == "media-top"
    assert operations[0].scene_id == "scene-1"


def test_zero_attempts_is_not_replaced_by_default(poller, provider, lane_a, sleeps):
    provider.add(CHECK_STATUS_URL, operations_response(op_entry("op-1", "SUCCESSFUL", media="m")))

    result = asyncio.run(poller.poll(_ops("op-1"), lane_a, max_attempts=0))

    assert result.outcome == PollOutcome.TIMED_OUT
    assert result.attempts == 0
    assert provider.calls(CHECK_STATUS_URL) == []
    assert sleeps == []


def test_login_page_from_session_endpoint_stops_polling_as_expired(poller, provider):
    provider.add(AUTH_SESSION_URL, httpx.Response(200, text="<html>login</html>"))
    lane = CredentialRecord(name="C", cookies="sid=c")

    with pytest.raises(TokenExpired):
        asyncio.run(poller.poll(_ops("op-1"), lane))

    assert provider.calls(CHECK_STATUS_URL) == []
