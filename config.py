# -*- coding: utf-8 -*-
"""
Configuration module for flow-lanes
Centralizes provider constants, enums and env-driven settings
"""

import os
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        print(f"[Config] Warning: {name}={value!r} is not an integer, using {default}", flush=True)
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        print(f"[Config] Warning: {name}={value!r} is not a number, using {default}", flush=True)
        return default


# ============ Provider endpoints ============

FLOW_API_BASE = "https://aisandbox-pa.googleapis.com/v1"
LABS_BASE = "https://labs.google/fx"

AUTH_SESSION_URL = f"{LABS_BASE}/api/auth/session"
VALIDATE_TOKEN_URL = f"{FLOW_API_BASE}:fetchUserRecommendations"
UPLOAD_IMAGE_URL = f"{FLOW_API_BASE}:uploadUserImage"
CHECK_STATUS_URL = f"{FLOW_API_BASE}/video:batchCheckAsyncVideoGenerationStatus"
UPDATE_SCENE_URL = f"{LABS_BASE}/api/trpc/project.updateScene"
GET_PROJECT_URL = f"{LABS_BASE}/api/trpc/project.get"
CREATE_PROJECT_URL = f"{LABS_BASE}/api/trpc/project.create"
CREATE_SCENE_URL = f"{LABS_BASE}/api/trpc/project.createScene"
BATCH_LOG_URL = f"{LABS_BASE}/api/trpc/general.submitBatchLog"

# Plain-HTTP IP lookup used to check that a lane's proxy works
PROXY_CHECK_URL = "http://ip-api.com/json/"

FLOW_REFERER = "https://labs.google/"
FLOW_ORIGIN = "https://labs.google"
FLOW_TOOL_NAME = "PINHOLE"
FLOW_PAYGATE_TIER = "PAYGATE_TIER_TWO"
UPLOAD_TOOL_NAME = "ASSET_MANAGER"


class JobKind(str, Enum):
    NEW = "NEW"
    CONTINUE = "CONTINUE"
    START_END = "START_END"
    TEXT_ONLY = "TEXT_ONLY"
    EXTEND = "EXTEND"


GENERATE_URLS = {
    JobKind.NEW: f"{FLOW_API_BASE}/video:batchAsyncGenerateVideo",
    JobKind.CONTINUE: f"{FLOW_API_BASE}/video:batchAsyncGenerateVideoExtendVideo",
    JobKind.START_END: f"{FLOW_API_BASE}/video:batchAsyncGenerateVideoStartAndEndImage",
    JobKind.TEXT_ONLY: f"{FLOW_API_BASE}/video:batchAsyncGenerateVideoText",
    JobKind.EXTEND: f"{FLOW_API_BASE}/video:batchAsyncGenerateVideoExtendVideo",
}

VIDEO_MODEL_KEYS = {
    JobKind.NEW: "veo_3_1_landscape_ultra",
    JobKind.CONTINUE: "veo_3_1_extend_fast_landscape_ultra",
    JobKind.START_END: "veo_3_1_i2v_s_fast_ultra_fl",
    JobKind.TEXT_ONLY: "veo_3_1_t2v_fast_ultra",
}

# Frame window of the anchor clip used for CONTINUE jobs
CONTINUE_START_FRAME = 168
CONTINUE_END_FRAME = 191

DEFAULT_TEXT_SEEDS = [26907, 23736]
MAX_SEED = 65535

# Scene timeline
CLIP_DURATION_SEC = Decimal("7")
CLIP_EPSILON_SEC = Decimal("0.000000001")
CLIP_TIME_PLACES = Decimal("0.000000001")

HIGH_TRAFFIC_MARKER = "HIGH_TRAFFIC"


class VideoAspectRatio(str, Enum):
    LANDSCAPE = "VIDEO_ASPECT_RATIO_LANDSCAPE"
    PORTRAIT = "VIDEO_ASPECT_RATIO_PORTRAIT"
    SQUARE = "VIDEO_ASPECT_RATIO_SQUARE"

    @property
    def image_ratio(self) -> str:
        """Matching aspect ratio name for image uploads"""
        return self.value.replace("VIDEO_", "IMAGE_", 1)


class OperationStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "OperationStatus":
        """Translate a MEDIA_GENERATION_STATUS_* string. Unknown values stay PENDING."""
        if not raw:
            return cls.PENDING
        name = str(raw).upper().replace("MEDIA_GENERATION_STATUS_", "", 1)
        try:
            return cls(name)
        except ValueError:
            return cls.PENDING

    def to_provider(self) -> str:
        return f"MEDIA_GENERATION_STATUS_{self.value}"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCESSFUL, OperationStatus.FAILED)


class PollOutcome(str, Enum):
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class ErrorCode(str, Enum):
    # Provider errors
    RATE_LIMIT = "RATE_LIMIT_429"
    HIGH_TRAFFIC = "HIGH_TRAFFIC"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    PROVIDER_HTTP_ERROR = "PROVIDER_HTTP_ERROR"
    API_NETWORK_ERROR = "API_NETWORK_ERROR"
    API_TIMEOUT = "API_TIMEOUT"

    # Job lifecycle
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    VIDEO_GENERATION_FAILED = "VIDEO_GENERATION_FAILED"
    POLL_TIMEOUT = "POLL_TIMEOUT"
    SCENE_UPDATE_FAILED = "SCENE_UPDATE_FAILED"
    UPLOAD_FAILED = "UPLOAD_FAILED"

    # Local errors
    CREDENTIAL_ERROR = "CREDENTIAL_ERROR"
    CREDENTIAL_NOT_FOUND = "CREDENTIAL_NOT_FOUND"
    INVALID_CONFIG = "INVALID_CONFIG"
    FILE_WRITE_ERROR = "FILE_WRITE_ERROR"

    # Unknown
    UNKNOWN = "UNKNOWN_ERROR"


@dataclass
class AppConfig:
    """Application-wide configuration"""

    # Paths - Can be overridden by environment variables
    base_dir: Path = field(default_factory=lambda: Path(__file__).parent)
    tokens_file: Path = field(default=None)
    tokens_xlsx_file: Path = field(default=None)
    outputs_dir: Path = field(default=None)

    # Server
    host: str = field(default_factory=lambda: os.environ.get("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _env_int("PORT", 3000))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))

    # Executor
    max_retries: int = field(default_factory=lambda: _env_int("FLOW_MAX_RETRIES", 5))
    backoff_base_ms: int = field(default_factory=lambda: _env_int("FLOW_BACKOFF_BASE_MS", 1000))
    backoff_cap_ms: int = field(default_factory=lambda: _env_int("FLOW_BACKOFF_CAP_MS", 32000))
    request_timeout_sec: float = field(default_factory=lambda: _env_float("FLOW_REQUEST_TIMEOUT", 60.0))

    # Dedup
    dedup_window_ms: int = field(default_factory=lambda: _env_int("FLOW_DEDUP_WINDOW_MS", 3000))

    # Polling: 120 x 10s is roughly 20 minutes per job
    poll_interval_sec: float = field(default_factory=lambda: _env_float("FLOW_POLL_INTERVAL", 10.0))
    poll_max_attempts: int = field(default_factory=lambda: _env_int("FLOW_POLL_MAX_ATTEMPTS", 120))

    # Credentials
    token_max_age_minutes: int = field(default_factory=lambda: _env_int("FLOW_TOKEN_MAX_AGE_MINUTES", 55))
    validate_cached_tokens: bool = field(default_factory=lambda: _env_bool("FLOW_VALIDATE_TOKENS", "true"))

    # Chains
    variant_count: int = field(default_factory=lambda: _env_int("FLOW_VARIANT_COUNT", 2))
    chain_step_pause_sec: float = field(default_factory=lambda: _env_float("FLOW_CHAIN_PAUSE", 2.0))
    download_variants: bool = field(default_factory=lambda: _env_bool("FLOW_DOWNLOAD_VARIANTS"))

    # Provider analytics events are optional
    send_analytics: bool = field(default_factory=lambda: _env_bool("FLOW_SEND_ANALYTICS"))

    def __post_init__(self):
        if self.tokens_file is None:
            tokens_env = os.environ.get("FLOW_TOKENS_FILE")
            self.tokens_file = Path(tokens_env) if tokens_env else self.base_dir / "tokens.txt"

        if self.tokens_xlsx_file is None:
            xlsx_env = os.environ.get("FLOW_TOKENS_XLSX")
            self.tokens_xlsx_file = Path(xlsx_env) if xlsx_env else self.base_dir / "tokens.xlsx"

        if self.outputs_dir is None:
            outputs_env = os.environ.get("OUTPUTS_DIR")
            self.outputs_dir = Path(outputs_env) if outputs_env else self.base_dir / "outputs"

        self.tokens_file = Path(self.tokens_file)
        self.tokens_xlsx_file = Path(self.tokens_xlsx_file)
        self.outputs_dir = Path(self.outputs_dir)

        if self.max_retries < 0:
            raise ValueError(f"Invalid config: max_retries must be >= 0, got {self.max_retries}")
        if self.poll_max_attempts < 1:
            raise ValueError(f"Invalid config: poll_max_attempts must be >= 1, got {self.poll_max_attempts}")

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before retry number `attempt` (0-based): base * 2^attempt, capped"""
        return min(self.backoff_base_ms * (2 ** attempt), self.backoff_cap_ms)


def ambient_credentials() -> dict:
    """Credentials for the implicit default lane, read from the environment"""
    return {
        "name": os.environ.get("FLOW_DEFAULT_LANE", "default"),
        "cookies": os.environ.get("FLOW_COOKIES", ""),
        "sessionToken": os.environ.get("FLOW_SESSION_TOKEN", ""),
        "authorization": os.environ.get("FLOW_BEARER_TOKEN") or None,
        "proxy": os.environ.get("FLOW_PROXY") or None,
        "projectId": os.environ.get("FLOW_PROJECT_ID") or None,
        "sceneId": os.environ.get("FLOW_SCENE_ID") or None,
    }


# Global config instance
app_config = AppConfig()
