# -*- coding: utf-8 -*-
"""
Error handling for flow-lanes

Provides:
- Exception types raised inside the orchestrator
- Error classification and codes
- User-friendly messages and recovery suggestions
- Uniform {success: False, ...} results for the outer boundary
"""

import re
import traceback
from typing import Optional, Dict, Any
from dataclasses import dataclass
from datetime import datetime

from config import ErrorCode


class FlowError(Exception):
    """Base class for every error raised by the orchestrator"""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RateLimitExceeded(FlowError):
    code = ErrorCode.RATE_LIMIT

    def __init__(self, retries: int, account: str = "unknown"):
        super().__init__(
            f"API rate limit exceeded after {retries} retries",
            {"retries": retries, "account": account},
        )
        self.retries = retries
        self.account = account


class ProviderHTTPError(FlowError):
    """Non-2xx provider response, with status and body kept for diagnostics"""

    code = ErrorCode.PROVIDER_HTTP_ERROR

    def __init__(self, status_code: int, body: Any = None, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message or f"Provider returned HTTP {status_code}", details)
        self.status_code = status_code
        self.body = body


class TokenExpired(ProviderHTTPError):
    code = ErrorCode.TOKEN_EXPIRED

    def __init__(self, body: Any = None, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(401, body, message or "Token expired or invalid (401)", details)


class SubmissionFailed(ProviderHTTPError):
    code = ErrorCode.SUBMISSION_FAILED


class SceneUpdateFailed(ProviderHTTPError):
    code = ErrorCode.SCENE_UPDATE_FAILED


class UploadFailed(ProviderHTTPError):
    code = ErrorCode.UPLOAD_FAILED


class DuplicateRequest(FlowError):
    code = ErrorCode.DUPLICATE_REQUEST

    def __init__(self, fingerprint: str):
        super().__init__("Duplicate request rejected", {"fingerprint": fingerprint})
        self.fingerprint = fingerprint


class PollTimedOut(FlowError):
    code = ErrorCode.POLL_TIMEOUT


class GenerationFailed(FlowError):
    code = ErrorCode.VIDEO_GENERATION_FAILED


class CredentialError(FlowError):
    code = ErrorCode.CREDENTIAL_ERROR


class InvalidJob(FlowError):
    code = ErrorCode.INVALID_CONFIG


@dataclass
class FlowErrorInfo:
    """Structured error information"""
    code: ErrorCode
    message: str
    user_message: str
    details: Dict[str, Any]
    recoverable: bool
    suggestion: str
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion,
            "timestamp": self.timestamp.isoformat(),
        }


class ErrorHandler:
    """
    Centralized error handling for lane operations.

    Usage:
        handler = ErrorHandler()
        info = handler.classify_exception(exception, context={"lane": "A"})
        result = handler.to_result(exception, context={"lane": "A"})
    """

    RATE_LIMIT_PATTERNS = [
        r"429",
        r"RESOURCE_EXHAUSTED",
        r"rate.?limit",
        r"quota.?exceeded",
        r"too.?many.?requests",
    ]

    HIGH_TRAFFIC_PATTERNS = [
        r"HIGH_TRAFFIC",
        r"high.?traffic",
    ]

    NETWORK_PATTERNS = [
        r"connection.?error",
        r"connect.?error",
        r"network.?unreachable",
        r"dns.?error",
        r"ssl.?error",
        r"connection.?reset",
        r"proxy.?error",
    ]

    AUTH_PATTERNS = [
        r"401",
        r"unauthenticated",
        r"unauthorized",
        r"invalid.?credentials",
        r"access.?token",
    ]

    # Typed errors map straight to a message set
    _TYPED_MESSAGES = {
        ErrorCode.RATE_LIMIT: (
            "The provider kept rate limiting this account.",
            True,
            "Wait a few minutes or spread jobs over more lanes.",
        ),
        ErrorCode.TOKEN_EXPIRED: (
            "The session for this lane has expired.",
            False,
            "Capture fresh cookies for this lane and save them again.",
        ),
        ErrorCode.DUPLICATE_REQUEST: (
            "The same request was submitted twice in a few seconds.",
            False,
            "Wait for the first submission to finish.",
        ),
        ErrorCode.SUBMISSION_FAILED: (
            "The provider rejected the generation request.",
            False,
            "Check the prompt, anchors and project/scene ids.",
        ),
        ErrorCode.PROVIDER_HTTP_ERROR: (
            "The provider returned an error.",
            False,
            "Check the response body in the error details.",
        ),
        ErrorCode.POLL_TIMEOUT: (
            "The generation did not finish in time.",
            True,
            "Resubmit the job.",
        ),
        ErrorCode.VIDEO_GENERATION_FAILED: (
            "All variants of the generation failed.",
            True,
            "Try a different prompt or seed.",
        ),
        ErrorCode.SCENE_UPDATE_FAILED: (
            "The scene could not be updated. The chain was stopped at this step.",
            True,
            "Retry the scene update for this step only.",
        ),
        ErrorCode.UPLOAD_FAILED: (
            "The image upload failed.",
            True,
            "Check the image and try again.",
        ),
        ErrorCode.CREDENTIAL_ERROR: (
            "This lane has no usable credentials.",
            False,
            "Save cookies and a session token for the lane.",
        ),
        ErrorCode.INVALID_CONFIG: (
            "Invalid request. Please check the parameters.",
            False,
            "Review the job fields listed in the error details.",
        ),
    }

    def __init__(self):
        self.error_counts: Dict[ErrorCode, int] = {}

    def classify_exception(
        self,
        exception: Exception,
        context: Dict[str, Any] = None
    ) -> FlowErrorInfo:
        """
        Classify an exception into a structured FlowErrorInfo.

        Args:
            exception: The caught exception
            context: Additional context (lane, job_id, etc.)
        """
        if context is None:
            context = {}

        details = {
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            **context,
        }

        if isinstance(exception, FlowError):
            details.update(exception.details)
            error = self._classify_flow_error(exception, details)
        else:
            details["traceback"] = traceback.format_exc()
            error = (
                self._classify_by_type(exception, details)
                or self._classify_by_patterns(str(exception), details)
                or FlowErrorInfo(
                    code=ErrorCode.UNKNOWN,
                    message=f"Unknown error: {type(exception).__name__}: {str(exception)[:200]}",
                    user_message="An unexpected error occurred. Please try again.",
                    details=details,
                    recoverable=True,
                    suggestion="Try again. If the problem persists, check the logs for details.",
                )
            )

        self._increment_count(error.code)
        return error

    def to_result(self, exception: Exception, context: Dict[str, Any] = None) -> Dict[str, Any]:
        """Uniform failure result returned at the service boundary"""
        info = self.classify_exception(exception, context)
        result = {
            "success": False,
            "error": info.message,
            "code": info.code.value,
            "user_message": info.user_message,
            "recoverable": info.recoverable,
            "suggestion": info.suggestion,
        }
        if isinstance(exception, TokenExpired):
            result["tokenExpired"] = True
        if isinstance(exception, ProviderHTTPError):
            result["statusCode"] = exception.status_code
            result["body"] = exception.body
        return result

    def _classify_flow_error(self, exception: FlowError, details: Dict) -> FlowErrorInfo:
        user_message, recoverable, suggestion = self._TYPED_MESSAGES.get(
            exception.code,
            ("The operation failed.", True, "Check the logs for details."),
        )
        if isinstance(exception, ProviderHTTPError):
            details = {**details, "status_code": exception.status_code}
        return FlowErrorInfo(
            code=exception.code,
            message=exception.message,
            user_message=user_message,
            details=details,
            recoverable=recoverable,
            suggestion=suggestion,
        )

    def _classify_by_type(self, exception: Exception, details: Dict) -> Optional[FlowErrorInfo]:
        """Classify error by exception type"""
        exception_type = type(exception).__name__

        if exception_type in ("TimeoutError", "ReadTimeout", "ConnectTimeout", "WriteTimeout", "PoolTimeout"):
            return FlowErrorInfo(
                code=ErrorCode.API_TIMEOUT,
                message="API request timed out",
                user_message="The request took too long.",
                details=details,
                recoverable=True,
                suggestion="The provider or proxy may be slow. Try again.",
            )

        if exception_type in ("ConnectError", "ProxyError", "RemoteProtocolError", "NetworkError"):
            return FlowErrorInfo(
                code=ErrorCode.API_NETWORK_ERROR,
                message=f"Network error: {exception}",
                user_message="Network connection issue.",
                details=details,
                recoverable=True,
                suggestion="Check the lane's proxy and your internet connection.",
            )

        if exception_type == "JSONDecodeError":
            return FlowErrorInfo(
                code=ErrorCode.API_NETWORK_ERROR,
                message="Invalid API response (not JSON)",
                user_message="Received an invalid response from the provider.",
                details=details,
                recoverable=True,
                suggestion="This is usually temporary. Try again.",
            )

        if exception_type in ("PermissionError", "IsADirectoryError"):
            return FlowErrorInfo(
                code=ErrorCode.FILE_WRITE_ERROR,
                message=f"Permission denied: {exception}",
                user_message="Could not write output file due to permissions.",
                details=details,
                recoverable=False,
                suggestion="Check file system permissions for the output directory.",
            )

        if exception_type in ("ValueError", "TypeError", "KeyError"):
            if "config" in str(exception).lower() or "invalid" in str(exception).lower():
                return FlowErrorInfo(
                    code=ErrorCode.INVALID_CONFIG,
                    message=f"Configuration error: {exception}",
                    user_message="Invalid configuration. Please check your settings.",
                    details=details,
                    recoverable=False,
                    suggestion="Review your configuration settings and correct any invalid values.",
                )

        return None

    def _classify_by_patterns(self, text: str, details: Dict) -> Optional[FlowErrorInfo]:
        """Classify error by string pattern matching"""
        if self._matches_patterns(text, self.HIGH_TRAFFIC_PATTERNS):
            return FlowErrorInfo(
                code=ErrorCode.HIGH_TRAFFIC,
                message="Provider reported high traffic",
                user_message="The provider is busy. Polling continues with a longer interval.",
                details=details,
                recoverable=True,
                suggestion="Wait a moment - this is a temporary service issue.",
            )

        if self._matches_patterns(text, self.RATE_LIMIT_PATTERNS):
            return FlowErrorInfo(
                code=ErrorCode.RATE_LIMIT,
                message="API rate limit exceeded (429)",
                user_message="The provider is rate limiting this account.",
                details=details,
                recoverable=True,
                suggestion="Wait a moment or add more lanes for rotation.",
            )

        if self._matches_patterns(text, self.NETWORK_PATTERNS):
            return FlowErrorInfo(
                code=ErrorCode.API_NETWORK_ERROR,
                message="Network error during API call",
                user_message="Network connection issue.",
                details=details,
                recoverable=True,
                suggestion="Check the lane's proxy and your internet connection.",
            )

        if self._matches_patterns(text, self.AUTH_PATTERNS):
            return FlowErrorInfo(
                code=ErrorCode.TOKEN_EXPIRED,
                message="Authentication with the provider failed",
                user_message="The session for this lane has expired.",
                details=details,
                recoverable=False,
                suggestion="Capture fresh cookies for this lane and save them again.",
            )

        return None

    def _matches_patterns(self, text: str, patterns: list) -> bool:
        """Check if text matches any of the patterns"""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False

    def _increment_count(self, code: ErrorCode):
        """Track error occurrences"""
        self.error_counts[code] = self.error_counts.get(code, 0) + 1

    def get_error_summary(self) -> Dict[str, int]:
        """Get summary of error counts"""
        return {code.value: count for code, count in self.error_counts.items()}


# Global error handler instance
error_handler = ErrorHandler()
