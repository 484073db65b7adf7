from __future__ import annotations


class SetupError(Exception):
    """Construction or registration failure before the manager runs. Always fatal."""


class RuntimeFatalError(Exception):
    """A runnable failed after run() began; the process must exit non-zero."""


class AlreadyStartedError(RuntimeError):
    pass


class LeaderElectionLostError(RuntimeError):
    pass


class LeaseManagerNotReadyError(Exception):
    """The lease manager has not been constructed yet. Callers should retry later."""


class LeaseAlreadyHeldError(Exception):
    def __init__(self, resource: str, holder: str):
        super().__init__(f"lease {resource} is held by {holder}")
        self.resource = resource
        self.holder = holder


class AdmissionDenied(Exception):
    """Raised by an admission validator to reject the request with a message."""
