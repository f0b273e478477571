import importlib.metadata

from .. import config  # noqa: TID252
from .base import (  # noqa: F401
    Identity,
    IdentityLookup,
    Listener,
    MeshError,
    Node,
    NodeInfo,
    Provider,
    UserProfile,
)

EP_GROUP = "dovetail.mesh.providers"


def load(config_obj: config.DovetailConfig) -> Provider:
    """
    Loads the mesh provider from the given configuration.
    """
    (ep,) = importlib.metadata.entry_points(group=EP_GROUP, name=config_obj.mesh_type)
    provider_type: type[Provider] = ep.load()
    return provider_type.from_config(config_obj)
