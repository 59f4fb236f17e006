from .sdk.decorators import observe
from .sdk.errors import RolloutError
from .sdk.rollout.cache_client import CacheClient
from .sdk.rollout.cache_server import CacheServer
from .sdk.rollout.supervisor import SubprocessSupervisor
from .sdk.stream_tee import consume_stream_result, detect_stream, tee_stream
from .sdk.types import WorkerConfig
from .version import __version__

__all__ = [
    "CacheClient",
    "CacheServer",
    "RolloutError",
    "SubprocessSupervisor",
    "WorkerConfig",
    "__version__",
    "consume_stream_result",
    "detect_stream",
    "observe",
    "tee_stream",
]
