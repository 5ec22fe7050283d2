import asyncio
import itertools
import json

import httpx

from config import (
    AUTH_SESSION_URL, CHECK_STATUS_URL, CREATE_PROJECT_URL, CREATE_SCENE_URL,
    GENERATE_URLS, GET_PROJECT_URL, UPDATE_SCENE_URL, JobKind,
)
from conftest import op_entry, operations_response
from lanes.chain import ChainRunner, ChainState, LanePlan, StepStatus
from lanes.prompts import ChainStep
from models import CredentialRecord, SceneClip


def generate_handler(prefix):
    counter = itertools.count(1)

    def handler(request):
        body = json.loads(request.content)
        n = next(counter)
        return operations_response(*[
            op_entry(f"{prefix}-{n}-{i}", scene=(r.get("metadata") or {}).get("sceneId"))
            for i, r in enumerate(body["requests"])
        ])
    return handler


def status_handler(stuck_prefix=None):
    def handler(request):
        entries = []
        for op in json.loads(request.content)["operations"]:
            name = op["operation"]["name"]
            if stuck_prefix and name.startswith(stuck_prefix):
                entries.append(op_entry(name, "ACTIVE"))
            else:
                entries.append(op_entry(name, "SUCCESSFUL", media=f"media-{name}", url=f"https://v/{name}.mp4"))
        return operations_response(*entries)
    return handler


def _state():
    return ChainState(
        project_id="project-1",
        scene_id="scene-1",
        clips=[SceneClip("c0", "0.000000001s", "7.000000001s", "intro")],
    )


def _continue_anchors(provider):
    return [
        body["requests"][0]["videoInput"]["mediaId"]
        for body in provider.bodies(GENERATE_URLS[JobKind.CONTINUE])
    ]


def test_chain_advances_anchor_after_each_scene_update(service, provider):
    provider.add(GENERATE_URLS[JobKind.CONTINUE], generate_handler("cont"))
    provider.add(CHECK_STATUS_URL, status_handler())
    provider.add(UPDATE_SCENE_URL, httpx.Response(200, json={}))
    service.load_pool(["A"])
    state = _state()

    steps = [ChainStep("shot one"), ChainStep("shot two")]
    report = asyncio.run(service.chains.run_chain("A", steps, state))

    assert not report.halted
    assert [s.status for s in report.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
    assert _continue_anchors(provider) == ["c0", "media-cont-1-0"]
    assert state.last_clip_id == "media-cont-2-0"
    assert [c.clip_id for c in state.clips] == ["c0", "media-cont-1-0", "media-cont-2-0"]
    assert state.clips[2].start_time == "14.000000003s"


def test_scene_update_failure_halts_chain_without_advancing(service, provider):
    provider.add(GENERATE_URLS[JobKind.CONTINUE], generate_handler("cont"))
    provider.add(CHECK_STATUS_URL, status_handler())
    provider.add(UPDATE_SCENE_URL, httpx.Response(500, json={"error": "boom"}))
    service.load_pool(["A"])
    state = _state()

    report = asyncio.run(service.chains.run_chain("A", [ChainStep("one"), ChainStep("two")], state))

    assert report.halted
    assert len(report.steps) == 1
    assert report.steps[0].status == StepStatus.FAILED
    assert report.error["code"] == "SCENE_UPDATE_FAILED"
    assert state.last_clip_id == "c0"
    assert [c.clip_id for c in state.clips] == ["c0"]
    assert len(provider.calls(GENERATE_URLS[JobKind.CONTINUE])) == 1


def test_poll_timeout_skips_step_and_keeps_anchor(service, provider, test_config):
    test_config.poll_max_attempts = 2
    provider.add(GENERATE_URLS[JobKind.CONTINUE], generate_handler("cont"))
    provider.add(CHECK_STATUS_URL, status_handler(stuck_prefix="cont-1"))
    provider.add(UPDATE_SCENE_URL, httpx.Response(200, json={}))
    service.load_pool(["A"])
    state = _state()

    report = asyncio.run(service.chains.run_chain("A", [ChainStep("one"), ChainStep("two")], state))

    assert [s.status for s in report.steps] == [StepStatus.SKIPPED, StepStatus.COMPLETED]
    assert report.steps[0].error["code"] == "POLL_TIMEOUT"
    assert _continue_anchors(provider) == ["c0", "c0"]
    assert state.last_clip_id == "media-cont-2-0"


def test_expired_token_halts_chain(service, provider):
    provider.add(GENERATE_URLS[JobKind.CONTINUE], httpx.Response(401, json={}))
    service.load_pool(["A"])

    report = asyncio.run(service.chains.run_chain("A", [ChainStep("one"), ChainStep("two")], _state()))

    assert report.halted
    assert report.error["tokenExpired"] is True
    assert report.error["statusCode"] == 401


def test_continue_without_anchor_starts_new_clip(service, provider):
    provider.add(GENERATE_URLS[JobKind.NEW], generate_handler("new"))
    provider.add(CHECK_STATUS_URL, status_handler())
    provider.add(UPDATE_SCENE_URL, httpx.Response(200, json={}))
    service.load_pool(["A"])
    state = ChainState(project_id="project-1", scene_id="scene-1")

    report = asyncio.run(service.chains.run_chain("A", [ChainStep("first")], state))

    assert report.steps[0].kind == JobKind.NEW
    assert provider.calls(GENERATE_URLS[JobKind.CONTINUE]) == []
    assert state.clips[0].start_time == "0.000000001s"


def test_lanes_run_concurrently_on_their_own_credentials(service, provider):
    provider.add(GENERATE_URLS[JobKind.NEW], generate_handler("new"))
    provider.add(CHECK_STATUS_URL, status_handler())
    provider.add(UPDATE_SCENE_URL, httpx.Response(200, json={}))
    service.load_pool(["A", "B"])

    plans = [
        LanePlan("A", [ChainStep("lane a shot", JobKind.NEW)], ChainState("project-1", "scene-1")),
        LanePlan("B", [ChainStep("lane b shot", JobKind.NEW)], ChainState("project-2", "scene-2")),
    ]
    result = asyncio.run(service.run_chains(plans))

    assert result["success"] is True
    assert [lane["lane"] for lane in result["lanes"]] == ["A", "B"]
    for request in provider.calls(GENERATE_URLS[JobKind.NEW]):
        body = json.loads(request.content)
        token = request.headers["Authorization"]
        project = body["clientContext"]["projectId"]
        assert (token, project) in {("Bearer token-a", "project-1"), ("Bearer token-b", "project-2")}


def test_variants_are_downloaded_when_enabled(service, provider, test_config, tmp_path, fake_sleep):
    test_config.download_variants = True
    provider.add(GENERATE_URLS[JobKind.NEW], generate_handler("new"))
    provider.add(CHECK_STATUS_URL, status_handler())
    provider.add(UPDATE_SCENE_URL, httpx.Response(200, json={}))
    service.load_pool(["A"])
    downloads = []

    async def fake_download(urls, output_dir, base_name, proxy=None):
        downloads.append((list(urls), output_dir, base_name, proxy))
        return [output_dir / f"{base_name}.mp4"]

    runner = ChainRunner(
        service.pool, service.submitter, service.poller, service.scene_updater,
        config=test_config, sleep=fake_sleep, downloader=fake_download,
    )
    report = asyncio.run(runner.run_chain("A", [ChainStep("x", JobKind.NEW)], ChainState("project-1", "scene-1")))

    urls, output_dir, base_name, proxy = downloads[0]
    assert urls == ["https://v/new-1-0.mp4", "https://v/new-1-1.mp4"]
    assert output_dir == test_config.outputs_dir / "A"
    assert base_name == "001"
    assert proxy == "10.0.0.1:8080:user:pass"
    assert report.steps[0].downloaded == [str(test_config.outputs_dir / "A" / "001.mp4")]


def test_crashed_lane_keeps_steps_finished_before_the_crash(service, provider):
    provider.add(GENERATE_URLS[JobKind.CONTINUE], generate_handler("cont"))
    provider.add(CHECK_STATUS_URL, status_handler())
    provider.add(UPDATE_SCENE_URL, httpx.Response(200, json={}))
    service.load_pool(["A"])

    poll = service.poller.poll
    calls = itertools.count(1)

    async def crash_on_second_poll(operations, credential, *args, **kwargs):
        if next(calls) == 2:
            raise RuntimeError("worker died")
        return await poll(operations, credential, *args, **kwargs)

    service.poller.poll = crash_on_second_poll
    plan = LanePlan(lane="A", steps=[ChainStep("one"), ChainStep("two")], state=_state())

    [report] = asyncio.run(service.chains.run_lanes([plan]))

    assert [s.status for s in report.steps] == [StepStatus.COMPLETED]
    assert report.halted
    assert report.error["code"] == "UNKNOWN_ERROR"


def test_prepare_state_creates_project_and_scene_for_bare_lane(service, provider):
    provider.add(CREATE_PROJECT_URL, httpx.Response(200, json={"result": {"data": {"json": {"projectId": "proj-new"}}}}))
    provider.add(CREATE_SCENE_URL, httpx.Response(200, json={"result": {"data": {"json": {"sceneId": "scene-new"}}}}))
    service.store.save(CredentialRecord(name="C", cookies="sid=c", bearer_token="token-c"))
    service.load_pool(["C"])

    state = asyncio.run(service.prepare_state("C"))

    assert (state.project_id, state.scene_id) == ("proj-new", "scene-new")
    assert state.clips == []
    assert provider.calls(GET_PROJECT_URL) == []


def test_login_page_instead_of_session_halts_chain_as_expired(service, provider):
    provider.add(AUTH_SESSION_URL, httpx.Response(200, text="<html>login</html>"))
    service.store.save(CredentialRecord(name="C", cookies="sid=c"))
    service.load_pool(["C"])

    report = asyncio.run(service.chains.run_chain("C", [ChainStep("one"), ChainStep("two")], _state()))

    assert report.halted
    assert report.error["tokenExpired"] is True
    assert provider.calls(GENERATE_URLS[JobKind.CONTINUE]) == []
