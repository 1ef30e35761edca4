from dataclasses import dataclass, field


@dataclass(frozen=True)
class FailureClass:
    """How the scheduler should treat a provider failure instead of failing the job."""

    action: str
    reason: str
    message: str
    context: dict = field(default_factory=dict)


def format_bytes(size):
    size = int(size or 0)
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    power = 0
    value = float(size)
    while value >= 1024 and power < len(units) - 1:
        value /= 1024
        power += 1
    return f"{value:.2f} {units[power]}"


class VideoProvider:
    key = ""

    def __init__(self, config=None):
        self.config = dict(config or {})

    def search(self, query, limit=50):
        raise NotImplementedError

    def resolve_download_url(self, external_id):
        raise NotImplementedError

    def status(self):
        return {"provider": self.key}

    def classify_failure(self, exc):
        return None


def is_direct_url(value):
    return isinstance(value, str) and value.startswith(("http://", "https://"))
