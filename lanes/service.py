# -*- coding: utf-8 -*-
"""
LaneService: wires the orchestrator together and is the boundary where
exceptions become uniform {"success": ...} results.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import PollOutcome, VideoAspectRatio, AppConfig, app_config
from credential_store import CredentialStore, open_credential_store
from error_handler import (
    CredentialError, GenerationFailed, PollTimedOut, ErrorHandler, error_handler,
)
from lanes.auth import TokenRefresher
from lanes.chain import ChainRunner, ChainState, LanePlan
from lanes.dedup import RequestDeduplicator
from lanes.executor import RequestExecutor
from lanes.poller import StatusPoller
from lanes.pool import TokenPool
from lanes.prompts import ChainStep
from lanes.scene import SceneUpdater, build_clip
from lanes.submitter import JobSubmitter
from lanes.uploader import ImageUploader
from models import CredentialRecord, GenerationJob, Operation, SceneClip

logger = logging.getLogger(__name__)


class LaneService:

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        config: AppConfig = None,
        executor: Optional[RequestExecutor] = None,
        default_record: Optional[CredentialRecord] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        handler: ErrorHandler = None,
    ):
        self.config = config or app_config
        self.handler = handler or error_handler
        self.store = store or open_credential_store(self.config)
        self.executor = executor or RequestExecutor(config=self.config, sleep=sleep)
        self.stats = self.executor.stats

        self.pool = TokenPool(self.store, default_record)
        self.deduplicator = RequestDeduplicator(self.config.dedup_window_ms)
        self.refresher = TokenRefresher(self.executor, self.config)
        self.submitter = JobSubmitter(self.executor, self.refresher, self.deduplicator, self.config)
        self.poller = StatusPoller(self.executor, self.refresher, self.config, sleep=sleep)
        self.scene_updater = SceneUpdater(self.executor, self.refresher)
        self.uploader = ImageUploader(self.executor, self.refresher)
        self.chains = ChainRunner(
            self.pool, self.submitter, self.poller, self.scene_updater,
            config=self.config, sleep=sleep, handler=self.handler,
        )

    async def _guard(self, context: Dict[str, Any], call: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        try:
            return await call()
        except Exception as e:
            logger.error(f"[Service] {context.get('action', 'operation')} failed: {e}")
            return self.handler.to_result(e, context)

    # ============ Lanes & pool ============

    def list_lanes(self) -> Dict[str, Any]:
        try:
            lanes = [r.to_dict() for r in self.store.list_all()]
        except (OSError, ValueError) as e:
            return self.handler.to_result(e, {"action": "list_lanes"})
        return {"success": True, "lanes": lanes}

    def save_lane(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            record = self.store.save(CredentialRecord.from_dict(data))
        except (OSError, ValueError) as e:
            return self.handler.to_result(e, {"action": "save_lane"})
        return {"success": True, "lane": record.to_dict()}

    def delete_lane(self, name: str) -> Dict[str, Any]:
        try:
            deleted = self.store.delete(name)
        except (OSError, ValueError) as e:
            return self.handler.to_result(e, {"action": "delete_lane"})
        if not deleted:
            return self.handler.to_result(
                CredentialError(f"Lane '{name}' not found", {"lane": name}), {"action": "delete_lane"}
            )
        return {"success": True, "deleted": name}

    def load_pool(self, names: List[str]) -> Dict[str, Any]:
        try:
            loaded = self.pool.load_pool(names)
        except (OSError, ValueError) as e:
            return self.handler.to_result(e, {"action": "load_pool"})
        return {
            "success": True,
            "loaded": loaded,
            "skipped": [n for n in names if n not in loaded],
            "count": len(loaded),
        }

    def pool_status(self) -> Dict[str, Any]:
        return {"success": True, **self.pool.status()}

    def rate_limit_stats(self) -> Dict[str, Any]:
        return {"success": True, "stats": self.stats.snapshot()}

    def reset_rate_limit_stats(self) -> Dict[str, Any]:
        self.stats.reset()
        return {"success": True, "stats": self.stats.snapshot()}

    # ============ Generation ============

    async def generate(
        self,
        job: GenerationJob,
        lane: Optional[str] = None,
        dedup_payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Submit on a lane; missing project/scene ids come from the lane's defaults"""
        credential = self.pool.by_name(lane)
        job = replace(
            job,
            project_id=job.project_id or credential.default_project_id,
            scene_id=job.scene_id or credential.default_scene_id,
        )

        async def call():
            operations = await self.submitter.submit(job, credential, dedup_payload)
            return {
                "success": True,
                "lane": credential.name,
                "job": job.to_dict(),
                "operations": [op.to_dict() for op in operations],
            }

        return await self._guard({"action": "generate", "lane": credential.name, "job_id": job.job_id}, call)

    async def check_status(self, operations: List[Operation], lane: Optional[str] = None) -> Dict[str, Any]:
        credential = self.pool.by_name(lane)

        async def call():
            updated = await self.poller.check_status(operations, credential)
            return {"success": True, "lane": credential.name, "operations": [op.to_dict() for op in updated]}

        return await self._guard({"action": "check_status", "lane": credential.name}, call)

    async def poll(self, operations: List[Operation], lane: Optional[str] = None) -> Dict[str, Any]:
        credential = self.pool.by_name(lane)

        async def call():
            result = await self.poller.poll(operations, credential)
            if result.outcome == PollOutcome.TIMED_OUT:
                failure = self.handler.to_result(
                    PollTimedOut(f"No result after {result.attempts} poll attempts"), {"lane": credential.name}
                )
                return {**failure, **result.to_dict()}
            if result.outcome == PollOutcome.FAILED:
                failure = self.handler.to_result(GenerationFailed("All variants failed"), {"lane": credential.name})
                return {**failure, **result.to_dict()}
            return {"success": True, "lane": credential.name, **result.to_dict()}

        return await self._guard({"action": "poll", "lane": credential.name}, call)

    async def append_clip(
        self,
        project_id: str,
        scene_id: str,
        existing_clips: List[SceneClip],
        media_id: str,
        prompt: str = "",
        lane: Optional[str] = None,
    ) -> Dict[str, Any]:
        credential = self.pool.by_name(lane)

        async def call():
            new_clip = build_clip(existing_clips, media_id, prompt)
            updated = await self.scene_updater.append_clip(
                project_id, scene_id, existing_clips, new_clip, credential
            )
            return {
                "success": True,
                "lane": credential.name,
                "clip": updated[-1].to_wire(),
                "clips": [c.to_wire() for c in updated],
            }

        return await self._guard({"action": "append_clip", "lane": credential.name}, call)

    async def fetch_scene(self, project_id: str, scene_id: str, lane: Optional[str] = None) -> Dict[str, Any]:
        credential = self.pool.by_name(lane)

        async def call():
            clips = await self.scene_updater.fetch_scene_clips(project_id, scene_id, credential)
            return {"success": True, "lane": credential.name, "clips": [c.to_wire() for c in clips]}

        return await self._guard({"action": "fetch_scene", "lane": credential.name}, call)

    async def upload_image(
        self,
        raw_image: str,
        cropped_image: Optional[str] = None,
        aspect_ratio: VideoAspectRatio = VideoAspectRatio.LANDSCAPE,
        lane: Optional[str] = None,
    ) -> Dict[str, Any]:
        credential = self.pool.by_name(lane)

        async def call():
            result = await self.uploader.upload_anchor(raw_image, credential, aspect_ratio, cropped_image)
            return {"success": True, "lane": credential.name, **result.to_dict()}

        return await self._guard({"action": "upload_image", "lane": credential.name}, call)

    # ============ Projects & proxies ============

    async def create_project(self, lane: Optional[str] = None) -> Dict[str, Any]:
        credential = self.pool.by_name(lane)

        async def call():
            project_id = await self.scene_updater.create_project(credential)
            return {"success": True, "lane": credential.name, "projectId": project_id}

        return await self._guard({"action": "create_project", "lane": credential.name}, call)

    async def create_scene(self, project_id: Optional[str] = None, lane: Optional[str] = None) -> Dict[str, Any]:
        credential = self.pool.by_name(lane)

        async def call():
            use_project = project_id or credential.default_project_id
            if not use_project:
                raise CredentialError(f"No project id given and lane '{credential.name}' has none", {"lane": credential.name})
            scene_id = await self.scene_updater.create_scene(use_project, credential)
            return {"success": True, "lane": credential.name, "projectId": use_project, "sceneId": scene_id}

        return await self._guard({"action": "create_scene", "lane": credential.name}, call)

    async def check_proxy(self, proxy: Optional[str] = None, lane: Optional[str] = None) -> Dict[str, Any]:
        """Check `proxy`, or the stored proxy of `lane` when none is given"""
        async def call():
            use_proxy = proxy
            if not use_proxy and lane:
                record = self.store.find_by_name(lane)
                use_proxy = record.proxy if record else None
            if not use_proxy:
                raise CredentialError("No proxy to check: give a proxy or a lane that has one", {"lane": lane})
            result = await self.executor.check_proxy(use_proxy, lane or "proxy-check")
            return {"success": True, **result}

        return await self._guard({"action": "check_proxy", "lane": lane}, call)

    # ============ Chains ============

    async def prepare_state(
        self,
        lane: str,
        project_id: Optional[str] = None,
        scene_id: Optional[str] = None,
        clips: Optional[List[SceneClip]] = None,
    ) -> ChainState:
        """
        Chain state for a lane.

        Project and scene fall back to the lane's defaults; when there are
        none, a new project and/or an empty scene are created. Clips are read
        from the provider when none are given.
        """
        credential = self.pool.by_name(lane)
        project_id = project_id or credential.default_project_id
        scene_id = scene_id or credential.default_scene_id
        if not project_id:
            project_id = await self.scene_updater.create_project(credential)
        if not scene_id:
            scene_id = await self.scene_updater.create_scene(project_id, credential)
            clips = []
        if clips is None:
            clips = await self.scene_updater.fetch_scene_clips(project_id, scene_id, credential)
        return ChainState(project_id=project_id, scene_id=scene_id, clips=clips)

    async def run_chains(self, plans: List[LanePlan]) -> Dict[str, Any]:
        reports = await self.chains.run_lanes(plans)
        lanes = [r.to_dict() for r in reports]
        return {"success": all(item["success"] for item in lanes), "lanes": lanes}

    async def run_chain(self, lane: str, steps: List[ChainStep], state: ChainState) -> Dict[str, Any]:
        result = await self.run_chains([LanePlan(lane=lane, steps=steps, state=state)])
        return result["lanes"][0]

    async def aclose(self):
        await self.executor.aclose()
