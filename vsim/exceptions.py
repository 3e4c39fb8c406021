"""Custom exceptions for vsim."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class TopologyError(ManagerError):
    """Topology file is malformed or violates a topology invariant."""


class ResourceConflict(ManagerError):
    """A fabric or network device with the requested name already exists."""


class UnsupportedArchitecture(ManagerError):
    """The node's architecture has no usable execution mode on this host."""


class ConflictingDefinition(ManagerError):
    """A domain is already defined with a different descriptor."""


class AlreadyRunning(ManagerError):
    """Start was requested for a domain that is already running."""


class NotFound(ManagerError):
    """The domain is unknown or has been destroyed."""


class InvalidProfile(ManagerError):
    """An impairment profile was rejected; the port keeps its previous shaping."""


class Cancelled(ManagerError):
    """A blocking operation was interrupted by its cancellation signal."""


class ConsoleError(ManagerError):
    """Console control protocol failure, local to one console session."""


class HandshakeTimeout(ConsoleError):
    """The guest agent did not emit the handshake marker in time."""


class CommandTimeout(ConsoleError):
    """A console command did not report completion in time."""
