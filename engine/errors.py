import re

_LOST_REFERENCE_RE = re.compile(r"(is not found|invalid gid)", re.IGNORECASE)


class InvalidInput(ValueError):
    pass


class DaemonError(RuntimeError):
    def __init__(
        self,
        message,
        *,
        method=None,
        status_code=None,
        rpc_code=None,
        rpc_message=None,
        response_preview=None,
    ):
        super().__init__(message)
        self.method = method
        self.status_code = status_code
        self.rpc_code = rpc_code
        self.rpc_message = rpc_message
        self.response_preview = response_preview

    @property
    def is_lost_reference(self):
        """True when the daemon no longer knows the handle the call referred to."""
        if self.rpc_message:
            lowered = self.rpc_message.lower()
            if "invalid gid" in lowered:
                return True
            return self.rpc_code in (None, 1) and "not found" in lowered
        if self.rpc_code is not None:
            return False
        # Opaque upstream failure: fall back to the raw body.
        if self.response_preview and _LOST_REFERENCE_RE.search(self.response_preview):
            return True
        return self.status_code == 404

    def to_dict(self):
        return {
            "message": str(self),
            "method": self.method,
            "status_code": self.status_code,
            "rpc_code": self.rpc_code,
            "rpc_message": self.rpc_message,
            "response_preview": self.response_preview,
        }


class ProviderError(RuntimeError):
    def __init__(
        self,
        message,
        *,
        provider_key=None,
        status_code=None,
        endpoint=None,
        error_code=None,
        response_preview=None,
    ):
        super().__init__(message)
        self.provider_key = provider_key
        self.status_code = status_code
        self.endpoint = endpoint
        self.error_code = error_code
        self.response_preview = response_preview

    def to_dict(self):
        return {
            "message": str(self),
            "provider_key": self.provider_key,
            "status_code": self.status_code,
            "endpoint": self.endpoint,
            "error_code": self.error_code,
            "response_preview": self.response_preview,
        }


class UnsupportedProvider(ProviderError):
    def __init__(self, provider_key):
        super().__init__(f"Unsupported provider: {provider_key}", provider_key=provider_key)


class RateLimitDeferred(RuntimeError):
    def __init__(self, retry_after_seconds, message="Provider call deferred due to rate limit"):
        super().__init__(message)
        self.retry_after_seconds = max(1, int(retry_after_seconds))


class ProviderBackoff(RuntimeError):
    def __init__(self, provider_key, provider_id, retry_after_seconds, message, context=None):
        super().__init__(message)
        self.provider_key = provider_key
        self.provider_id = provider_id
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        self.context = dict(context or {})


class ProviderPaused(RuntimeError):
    def __init__(self, provider_key, provider_id, reason, message, context=None):
        super().__init__(message)
        self.provider_key = provider_key
        self.provider_id = provider_id
        self.reason = reason
        self.context = dict(context or {})


class AdmissionBlocked(RuntimeError):
    def __init__(self, reason, detail=None):
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail
