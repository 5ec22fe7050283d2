# -*- coding: utf-8 -*-
"""
In-memory data models for flow-lanes

Nothing here is persisted by the orchestrator itself: credential records
round-trip through the credential store, everything else lives for the
duration of a job or chain.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field

from config import (
    JobKind, OperationStatus, PollOutcome, VideoAspectRatio,
    HIGH_TRAFFIC_MARKER, MAX_SEED,
)


def strip_bearer(token: Optional[str]) -> Optional[str]:
    """Stored tokens sometimes carry the 'Bearer ' prefix"""
    if not token:
        return None
    token = token.strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token or None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


@dataclass
class CredentialRecord:
    """One lane: an account's cookies/tokens plus its optional proxy and defaults"""
    name: str
    cookies: str = ""
    session_token: str = ""
    bearer_token: Optional[str] = None
    proxy: Optional[str] = None
    default_project_id: Optional[str] = None
    default_scene_id: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    saved_at: Optional[datetime] = None

    def __post_init__(self):
        self.bearer_token = strip_bearer(self.bearer_token)

    def token_age(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if self.last_refreshed_at is None:
            return None
        return (now or datetime.utcnow()) - self.last_refreshed_at

    def is_stale(self, max_age_minutes: int, now: Optional[datetime] = None) -> bool:
        """True when there is no bearer token, or it is older than max_age_minutes.

        A pre-fetched token with no refresh timestamp is trusted as-is.
        """
        if not self.bearer_token:
            return True
        age = self.token_age(now)
        if age is None:
            return False
        return age >= timedelta(minutes=max_age_minutes)

    def set_bearer(self, token: str, now: Optional[datetime] = None):
        self.bearer_token = strip_bearer(token)
        self.last_refreshed_at = now or datetime.utcnow()

    def clear_bearer(self):
        self.bearer_token = None
        self.last_refreshed_at = None

    @property
    def has_session(self) -> bool:
        return bool(self.cookies)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialRecord":
        """Build from a storage row (original column names) or from to_dict() output"""
        def pick(*keys):
            for key in keys:
                value = data.get(key)
                if value not in (None, ""):
                    return value
            return None

        name = pick("name")
        if not name:
            raise ValueError("Invalid credential record: missing name")
        return cls(
            name=str(name),
            cookies=str(pick("cookies") or ""),
            session_token=str(pick("sessionToken", "session_token") or ""),
            bearer_token=pick("authorization", "bearerToken", "bearer_token"),
            proxy=pick("proxy"),
            default_project_id=pick("projectId", "default_project_id"),
            default_scene_id=pick("sceneId", "default_scene_id"),
            last_refreshed_at=_parse_datetime(pick("lastRefreshedAt", "last_refreshed_at")),
            saved_at=_parse_datetime(pick("savedAt", "saved_at")),
        )

    def to_storage_row(self) -> Dict[str, Any]:
        """Row in the column layout of tokens.txt / tokens.xlsx"""
        return {
            "name": self.name,
            "sessionToken": self.session_token,
            "cookies": self.cookies,
            "authorization": self.bearer_token or "",
            "proxy": self.proxy or "",
            "projectId": self.default_project_id or "",
            "sceneId": self.default_scene_id or "",
            "savedAt": self.saved_at.isoformat() if self.saved_at else "",
        }

    def to_dict(self, masked: bool = True) -> Dict[str, Any]:
        from lanes.proxy import mask_proxy

        return {
            "name": self.name,
            "has_cookies": bool(self.cookies),
            "has_session_token": bool(self.session_token),
            "has_bearer_token": bool(self.bearer_token),
            "proxy": mask_proxy(self.proxy) if masked else self.proxy,
            "project_id": self.default_project_id,
            "scene_id": self.default_scene_id,
            "last_refreshed_at": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
            "saved_at": self.saved_at.isoformat() if self.saved_at else None,
        }


@dataclass(frozen=True)
class GenerationJob:
    """One logical generation request; each seed becomes one variant"""
    kind: JobKind
    prompt: str
    seeds: List[int]
    project_id: Optional[str] = None
    scene_id: Optional[str] = None
    anchor_media_ids: List[str] = field(default_factory=list)
    aspect_ratio: VideoAspectRatio = VideoAspectRatio.LANDSCAPE
    scene_ids: List[str] = field(default_factory=list)
    additional_duration_sec: Optional[int] = None
    video_model_key: Optional[str] = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def validate(self) -> List[str]:
        """Validate job fields, return list of errors"""
        errors = []

        if not self.prompt or not self.prompt.strip():
            errors.append("prompt is required")

        if self.kind != JobKind.EXTEND and not self.seeds:
            errors.append("at least one seed is required")
        for seed in self.seeds:
            if not isinstance(seed, int) or seed < 0 or seed > MAX_SEED:
                errors.append(f"seed {seed!r} is not a uint16")

        if len(self.anchor_media_ids) > 2:
            errors.append("at most 2 anchor media ids are allowed")

        if self.kind in (JobKind.CONTINUE, JobKind.EXTEND) and not self.anchor_media_ids:
            errors.append(f"{self.kind.value} needs the previous media id as anchor")

        if self.kind == JobKind.START_END and len(self.anchor_media_ids) != 2:
            errors.append("START_END needs a start and an end image media id")

        if self.kind != JobKind.TEXT_ONLY and not self.project_id:
            errors.append("project_id is required")

        if self.scene_ids and len(self.scene_ids) != len(self.seeds):
            errors.append("scene_ids must have one entry per seed")

        return errors

    def fingerprint_payload(self, lane: str) -> Dict[str, Any]:
        """Fields that identify one logical submission (job_id excluded)"""
        return {
            "lane": lane,
            "kind": self.kind.value,
            "prompt": self.prompt,
            "seeds": list(self.seeds),
            "anchors": list(self.anchor_media_ids),
            "projectId": self.project_id,
            "sceneId": self.scene_id,
            "aspectRatio": self.aspect_ratio.value,
            "sceneIds": list(self.scene_ids),
            "additionalDurationSec": self.additional_duration_sec,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "prompt": self.prompt,
            "seeds": list(self.seeds),
            "anchor_media_ids": list(self.anchor_media_ids),
            "project_id": self.project_id,
            "scene_id": self.scene_id,
            "aspect_ratio": self.aspect_ratio.value,
        }


@dataclass
class Operation:
    """Handle to one in-flight variant on the provider side"""
    operation_name: str
    scene_id: Optional[str] = None
    status: OperationStatus = OperationStatus.PENDING
    media_id: Optional[str] = None
    video_url: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_high_traffic(self) -> bool:
        return (
            self.status == OperationStatus.FAILED
            and bool(self.error_message)
            and HIGH_TRAFFIC_MARKER in self.error_message
        )

    @classmethod
    def from_wire(cls, data: Dict[str, Any], fallback_scene_id: Optional[str] = None) -> "Operation":
        """Parse one entry of a provider `operations` array"""
        op = data.get("operation") or {}
        metadata = op.get("metadata") or {}
        video = metadata.get("video") or {}
        error = op.get("error") or data.get("error") or {}

        return cls(
            operation_name=op.get("name") or data.get("name") or "",
            scene_id=data.get("sceneId") or fallback_scene_id,
            status=OperationStatus.from_provider(data.get("status")),
            media_id=data.get("mediaGenerationId") or video.get("mediaGenerationId"),
            video_url=video.get("fifeUrl"),
            error_message=error.get("message") if isinstance(error, dict) else str(error),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "operation": {"name": self.operation_name},
            "sceneId": self.scene_id,
            "status": self.status.to_provider(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_name": self.operation_name,
            "scene_id": self.scene_id,
            "status": self.status.value,
            "media_id": self.media_id,
            "video_url": self.video_url,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class SceneClip:
    """A timed clip in a scene; clip_id is the winning media id"""
    clip_id: str
    start_time: str
    end_time: str
    prompt: str = ""

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "SceneClip":
        return cls(
            clip_id=data.get("clipId", ""),
            start_time=data.get("startTime", "0s"),
            end_time=data.get("endTime", "0s"),
            prompt=data.get("prompt", ""),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "clipId": self.clip_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "prompt": self.prompt,
        }


@dataclass
class DedupEntry:
    fingerprint: str
    inserted_at: float


@dataclass
class PollResult:
    """Outcome of polling one job's operations to completion"""
    outcome: PollOutcome
    operations: List[Operation]
    selected_media_id: Optional[str] = None
    video_urls: List[str] = field(default_factory=list)
    attempts: int = 0
    success_count: int = 0
    failure_count: int = 0

    @property
    def success(self) -> bool:
        return self.outcome == PollOutcome.SUCCESSFUL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "selected_media_id": self.selected_media_id,
            "video_urls": list(self.video_urls),
            "attempts": self.attempts,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "operations": [op.to_dict() for op in self.operations],
        }
