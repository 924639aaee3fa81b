"""Exceptions raised by the node manager."""


class NodeManagerError(Exception):
    """Base class for node manager errors."""


class ConfigBuildError(NodeManagerError):
    """Kubernetes client configuration could not be built."""


class FactoryError(NodeManagerError):
    """A watch-engine factory could not be constructed."""


class RegistrationError(NodeManagerError):
    """The ksmtuned controller could not be registered."""


class StartError(NodeManagerError):
    """A watch-engine factory failed to start."""


class StopError(NodeManagerError):
    """The ksmtuned controller failed to stop cleanly."""


class KsmtunedError(NodeManagerError):
    """Reading or writing KSM state failed, or a Ksmtuned spec is invalid."""
