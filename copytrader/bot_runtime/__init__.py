from .logging import setup_logger
from .loop import bootstrap_dependencies, make_runtime_config_provider, run_replication
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "bootstrap_dependencies",
    "make_runtime_config_provider",
    "run_replication",
    "setup_logger",
]
