"""Infrastructure modules for ooda-agent"""

from .events import Event, EventBus  # noqa: F401
from .healthcheck import HealthServer, build_health_payload  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401

__all__ = [
	"Event",
	"EventBus",
	"HealthServer",
	"build_health_payload",
	"MetricsRecorder",
	"CycleStats",
]
