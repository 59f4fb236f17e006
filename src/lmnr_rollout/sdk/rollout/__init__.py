"""
Rollout infrastructure: entry point discovery, the worker protocol, the
subprocess supervisor, and the call-site cache (client, server and provider
instrumentation).
"""

from .cache_client import CacheClient
from .cache_server import CacheServer
from .discovery import discover_entrypoints, select_entrypoint
from .instrumentation import ProviderProfile, RolloutInstrumentationWrapper
from .protocol import WORKER_MESSAGE_PREFIX
from .supervisor import SubprocessSupervisor

__all__ = [
    "CacheClient",
    "CacheServer",
    "ProviderProfile",
    "RolloutInstrumentationWrapper",
    "SubprocessSupervisor",
    "WORKER_MESSAGE_PREFIX",
    "discover_entrypoints",
    "select_entrypoint",
]
