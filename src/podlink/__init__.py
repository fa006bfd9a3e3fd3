"""
podlink - run one workload as a Kubernetes Pod and talk to it over stdio.

    from podlink import SessionCoordinator, Workload, load_config

    config = load_config("session.yaml")
    async with SessionCoordinator(config) as session:
        channel = await session.run(Workload(image="busybox", command=["cat"]))
        ...
"""

__version__ = "0.1.0"

from podlink.config import Config, load_config  # noqa: E402
from podlink.core.errors import SessionError  # noqa: E402
from podlink.kube import (  # noqa: E402
    DuplexChannel,
    Phase,
    SessionCoordinator,
    SessionResult,
    Workload,
    run_session,
)

__all__ = [
    "Config",
    "DuplexChannel",
    "Phase",
    "SessionCoordinator",
    "SessionError",
    "SessionResult",
    "Workload",
    "__version__",
    "load_config",
    "run_session",
]
