"""
Error taxonomy for the voice ordering core.

Every error carries a stable ``code`` (used in HTTP bodies and logs) and a
``retryable`` flag telling clients whether repeating the request can succeed.
"""

from typing import Optional


class VoiceOrderingError(Exception):
    code = "voice_ordering_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidArgument(VoiceOrderingError):
    code = "invalid_argument"


class SessionNotFound(VoiceOrderingError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Voice session not found: {session_id}")
        self.session_id = session_id


class SessionExpired(VoiceOrderingError):
    code = "session_expired"

    def __init__(self, session_id: str, status: str = "expired"):
        super().__init__(f"Voice session is no longer usable ({status}): {session_id}")
        self.session_id = session_id
        self.status = status


class TurnNotFound(VoiceOrderingError):
    code = "turn_not_found"

    def __init__(self, session_id: str, turn_id):
        super().__init__(f"Turn {turn_id} not found in session {session_id}")
        self.session_id = session_id
        self.turn_id = turn_id


class InvalidAudio(VoiceOrderingError):
    code = "invalid_audio"


class InvalidOrder(VoiceOrderingError):
    code = "invalid_order"


class RateLimited(VoiceOrderingError):
    code = "rate_limited"
    retryable = True

    def __init__(self, key: str, retry_after: Optional[float] = None):
        super().__init__(f"Rate limit exceeded for {key}")
        self.key = key
        self.retry_after = retry_after


class ProviderFailure(VoiceOrderingError):
    """External provider call failed.

    ``transient`` failures (timeouts, 429/5xx) are retried inside the pipeline and
    reported as retryable; permanent ones (bad request, auth) are not.
    """

    code = "provider_failure"

    def __init__(self, provider: str, message: str, *, transient: bool = False, status: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.transient = transient
        self.status = status

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class EmptyOrder(VoiceOrderingError):
    code = "empty_order"

    def __init__(self, session_id: str):
        super().__init__(f"No items in order for session {session_id}")
        self.session_id = session_id


class AlreadyFinalized(VoiceOrderingError):
    code = "already_finalized"

    def __init__(self, session_id: str, order_id: Optional[str] = None):
        super().__init__(f"Session {session_id} was already finalized")
        self.session_id = session_id
        self.order_id = order_id


class ConcurrentModification(VoiceOrderingError):
    code = "concurrent_modification"


class TokenIssueError(VoiceOrderingError):
    code = "token_issue_failed"
    retryable = True
