import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class RequestContext:
    """Per-call identity passed explicitly through a tool invocation."""

    tool: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:9])
    started_at: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000.0, 2)

    def log_extra(self, **fields: Any) -> Dict[str, Any]:
        extra: Dict[str, Any] = {"request_id": self.request_id, "tool": self.tool}
        extra.update(fields)
        return extra
