"""
Utility functions for configuration loading, logging and worker pools.
"""
from .config import (
    load_config,
    get_registration_config,
    get_debug_config,
)
from .logger import (
    ProjectLogger,
    stage_timer,
)
from .parallel import (
    parallel_for_chunks,
    resolve_workers,
)
