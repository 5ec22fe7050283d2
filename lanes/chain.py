# -*- coding: utf-8 -*-
"""
Chain runner: prompt after prompt on one lane, each clip appended to the
scene and used as the anchor of the next step. Several lanes run
concurrently, each pinned to its own credential.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from config import JobKind, PollOutcome, AppConfig, app_config
from error_handler import (
    CredentialError, FlowError, GenerationFailed, PollTimedOut, SceneUpdateFailed,
    TokenExpired, ErrorHandler, error_handler,
)
from lanes.downloads import download_variants
from lanes.prompts import ChainStep
from lanes.scene import build_clip
from lanes.submitter import random_seeds
from models import GenerationJob, SceneClip

logger = logging.getLogger(__name__)

# Errors after which further steps on the same lane cannot succeed
HALTING_ERRORS = (TokenExpired, CredentialError, SceneUpdateFailed)


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"      # no usable result, chain continues from the same anchor
    FAILED = "failed"        # chain stops here


@dataclass
class ChainState:
    """Local copy of a scene's clips plus the anchor for the next CONTINUE step"""
    project_id: str
    scene_id: str
    clips: List[SceneClip] = field(default_factory=list)
    last_clip_id: Optional[str] = None

    def __post_init__(self):
        if self.last_clip_id is None and self.clips:
            self.last_clip_id = self.clips[-1].clip_id

    def advance(self, clips: List[SceneClip], clip_id: str):
        self.clips = list(clips)
        self.last_clip_id = clip_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "scene_id": self.scene_id,
            "clips": [c.to_wire() for c in self.clips],
            "last_clip_id": self.last_clip_id,
        }


@dataclass
class StepReport:
    index: int
    prompt: str
    kind: JobKind
    status: StepStatus
    media_id: Optional[str] = None
    video_urls: List[str] = field(default_factory=list)
    downloaded: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def halts_chain(self) -> bool:
        return self.status == StepStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "prompt": self.prompt,
            "kind": self.kind.value,
            "status": self.status.value,
            "media_id": self.media_id,
            "video_urls": list(self.video_urls),
            "downloaded": list(self.downloaded),
            "error": self.error,
        }


@dataclass
class ChainReport:
    lane: str
    state: ChainState
    steps: List[StepReport] = field(default_factory=list)
    halted: bool = False
    error: Optional[Dict[str, Any]] = None

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": not self.halted and self.error is None,
            "lane": self.lane,
            "completed": self.completed_count,
            "total": len(self.steps),
            "halted": self.halted,
            "error": self.error,
            "steps": [s.to_dict() for s in self.steps],
            "state": self.state.to_dict(),
        }


@dataclass
class LanePlan:
    lane: str
    steps: List[ChainStep]
    state: ChainState


class ChainRunner:

    def __init__(
        self,
        pool,
        submitter,
        poller,
        scene_updater,
        config: AppConfig = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        downloader=download_variants,
        handler: ErrorHandler = None,
    ):
        self.pool = pool
        self.submitter = submitter
        self.poller = poller
        self.scene_updater = scene_updater
        self.config = config or app_config
        self._sleep = sleep
        self._download = downloader
        self.handler = handler or error_handler

    def _failed(self, step_index, prompt, kind, exc, lane) -> StepReport:
        status = StepStatus.FAILED if isinstance(exc, HALTING_ERRORS) else StepStatus.SKIPPED
        logger.error(f"[Chain] {lane}: step {step_index + 1} {status.value}: {exc}")
        return StepReport(
            index=step_index,
            prompt=prompt,
            kind=kind,
            status=status,
            error=self.handler.to_result(exc, {"lane": lane, "step": step_index + 1}),
        )

    async def run_step(self, lane: str, state: ChainState, step: ChainStep, index: int = 0) -> StepReport:
        """submit -> poll -> append clip; state advances only when the scene update succeeds"""
        credential = self.pool.by_name(lane)

        kind = step.kind
        anchors = []
        if kind == JobKind.CONTINUE:
            if state.last_clip_id:
                anchors = [state.last_clip_id]
            else:
                logger.warning(f"[Chain] {lane}: step {index + 1} has no clip to continue from, starting a new one")
                kind = JobKind.NEW

        job = GenerationJob(
            kind=kind,
            prompt=step.prompt,
            seeds=random_seeds(self.config.variant_count),
            project_id=state.project_id,
            scene_id=state.scene_id,
            anchor_media_ids=anchors,
        )
        logger.info(f"[Chain] {lane}: step {index + 1} [{kind.value}] {step.prompt[:80]}")

        try:
            operations = await self.submitter.submit(job, credential)
            result = await self.poller.poll(operations, credential)
        except (FlowError, httpx.HTTPError) as e:
            return self._failed(index, step.prompt, kind, e, lane)

        if result.outcome == PollOutcome.TIMED_OUT:
            return self._failed(
                index, step.prompt, kind,
                PollTimedOut(f"No result after {result.attempts} poll attempts", {"job_id": job.job_id}),
                lane,
            )
        if not result.success:
            return self._failed(
                index, step.prompt, kind,
                GenerationFailed("All variants failed", {"job_id": job.job_id}),
                lane,
            )

        new_clip = build_clip(state.clips, result.selected_media_id, step.prompt)
        try:
            updated = await self.scene_updater.append_clip(
                state.project_id, state.scene_id, state.clips, new_clip, credential
            )
        except (FlowError, httpx.HTTPError) as e:
            if isinstance(e, httpx.HTTPError):
                e = SceneUpdateFailed(0, None, f"Scene update failed: {e}")
            return self._failed(index, step.prompt, kind, e, lane)

        state.advance(updated, new_clip.clip_id)

        report = StepReport(
            index=index,
            prompt=step.prompt,
            kind=kind,
            status=StepStatus.COMPLETED,
            media_id=new_clip.clip_id,
            video_urls=result.video_urls,
        )

        if self.config.download_variants and result.video_urls:
            paths = await self._download(
                result.video_urls,
                self.config.outputs_dir / lane,
                f"{index + 1:03d}",
                proxy=credential.proxy,
            )
            report.downloaded = [str(p) for p in paths]

        return report

    async def run_chain(
        self,
        lane: str,
        steps: List[ChainStep],
        state: ChainState,
        report: Optional[ChainReport] = None,
    ) -> ChainReport:
        """Steps in order on one lane. Step reports are appended to `report` as they finish."""
        if report is None:
            report = ChainReport(lane=lane, state=state)
        logger.info(f"[Chain] {lane}: starting {len(steps)} step(s) on scene {state.scene_id}")

        for index, step in enumerate(steps):
            step_report = await self.run_step(lane, state, step, index)
            report.steps.append(step_report)

            if step_report.halts_chain:
                report.halted = True
                report.error = step_report.error
                logger.error(f"[Chain] {lane}: halted at step {index + 1}")
                break

            if index < len(steps) - 1 and self.config.chain_step_pause_sec > 0:
                await self._sleep(self.config.chain_step_pause_sec)

        logger.info(f"[Chain] {lane}: {report.completed_count}/{len(steps)} step(s) completed")
        return report

    async def run_lanes(self, plans: List[LanePlan]) -> List[ChainReport]:
        """Run one chain per lane concurrently"""
        reports = [ChainReport(lane=plan.lane, state=plan.state) for plan in plans]
        results = await asyncio.gather(
            *(self.run_chain(plan.lane, plan.steps, plan.state, report) for plan, report in zip(plans, reports)),
            return_exceptions=True,
        )

        for report, result in zip(reports, results):
            if isinstance(result, Exception):
                # keep the steps that finished before the crash
                logger.error(f"[Chain] {report.lane}: crashed after {len(report.steps)} step(s): {result}")
                report.halted = True
                report.error = self.handler.to_result(result, {"lane": report.lane, "step": len(report.steps) + 1})
        return reports
