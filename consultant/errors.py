class OrchestratorConfigError(RuntimeError):
    """A required collaborator is missing; the whole run is aborted."""


class RunCancelledError(Exception):
    pass


class UnsupportedToolError(Exception):
    """Tool name has no local handler and the gateway cannot serve it."""
