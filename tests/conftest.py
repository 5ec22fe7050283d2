import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from config import AppConfig
from credential_store import JsonCredentialStore
from lanes.dedup import RequestDeduplicator
from lanes.executor import RequestExecutor
from lanes.service import LaneService
from models import CredentialRecord

Handler = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeProvider:
    """MockTransport handler keyed by exact URL.

    Each route holds a queue of responses; the last one repeats once the
    queue is down to a single entry.
    """

    def __init__(self):
        self.routes: Dict[str, List[Handler]] = {}
        self.requests: List[httpx.Request] = []
        self.proxies: List[Optional[str]] = []

    def add(self, url: str, *responses: Handler):
        self.routes.setdefault(url, []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        queue = self.routes.get(url)
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {url}"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item):
            return item(request)
        # fresh copy, a Response object is consumed once it has been sent
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    def calls(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).split("?")[0] == url]

    def bodies(self, url: str) -> List[Any]:
        return [json.loads(r.content) for r in self.calls(url)]

    def client_factory(self, proxy: Optional[str]) -> httpx.AsyncClient:
        self.proxies.append(proxy)
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def op_entry(name: str, status: str = "PENDING", media: str = None, url: str = None,
             error: str = None, scene: str = None) -> Dict[str, Any]:
    """One entry of a provider `operations` array"""
    operation: Dict[str, Any] = {"name": name}
    if media or url:
        operation["metadata"] = {"video": {"mediaGenerationId": media, "fifeUrl": url}}
    if error:
        operation["error"] = {"message": error}
    entry = {"operation": operation, "status": f"MEDIA_GENERATION_STATUS_{status}"}
    if scene:
        entry["sceneId"] = scene
    return entry


def operations_response(*entries) -> httpx.Response:
    return httpx.Response(200, json={"operations": list(entries)})


@pytest.fixture
def test_config(tmp_path):
    return AppConfig(
        tokens_file=tmp_path / "tokens.txt",
        tokens_xlsx_file=tmp_path / "tokens.xlsx",
        outputs_dir=tmp_path / "outputs",
        max_retries=5,
        backoff_base_ms=1000,
        backoff_cap_ms=32000,
        dedup_window_ms=3000,
        poll_interval_sec=10.0,
        poll_max_attempts=120,
        validate_cached_tokens=False,
        chain_step_pause_sec=0,
        variant_count=2,
        download_variants=False,
        send_analytics=False,
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def executor(provider, test_config, fake_sleep):
    return RequestExecutor(config=test_config, sleep=fake_sleep, client_factory=provider.client_factory)


@pytest.fixture
def deduplicator(test_config):
    return RequestDeduplicator(test_config.dedup_window_ms)


@pytest.fixture
def lane_a():
    return CredentialRecord(
        name="A",
        cookies="sid=a",
        session_token="session-a",
        bearer_token="Bearer token-a",
        proxy="10.0.0.1:8080:user:pass",
        default_project_id="project-1",
        default_scene_id="scene-1",
    )


@pytest.fixture
def lane_b():
    return CredentialRecord(
        name="B",
        cookies="sid=b",
        session_token="session-b",
        bearer_token="token-b",
        default_project_id="project-2",
        default_scene_id="scene-2",
    )


@pytest.fixture
def store(tmp_path, lane_a, lane_b):
    store = JsonCredentialStore(tmp_path / "tokens.txt")
    store.save(lane_a)
    store.save(lane_b)
    return store


@pytest.fixture
def default_record():
    return CredentialRecord(name="default", cookies="sid=default", bearer_token="token-default")


@pytest.fixture
def service(store, test_config, executor, default_record, fake_sleep):
    return LaneService(
        store=store,
        config=test_config,
        executor=executor,
        default_record=default_record,
        sleep=fake_sleep,
    )
