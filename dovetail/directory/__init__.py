import importlib.metadata

from .. import config  # noqa: TID252
from .base import (  # noqa: F401
    DirectoryConnectError,
    DirectoryError,
    InspectError,
    Notification,
    Workload,
    WorkloadDirectory,
)

EP_GROUP = "dovetail.directories"


def load(config_obj: config.DovetailConfig) -> WorkloadDirectory:
    """
    Loads the workload directory from the given configuration.
    """
    (ep,) = importlib.metadata.entry_points(group=EP_GROUP, name=config_obj.directory_type)
    directory_type: type[WorkloadDirectory] = ep.load()
    return directory_type.from_config(config_obj)
