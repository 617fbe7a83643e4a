"""Error types raised by the reconciliation engine."""

from typing import Optional


BUG_MARKER = "This is a bug in pveshape, please report it to the developers."


class PveshapeError(Exception):
    """Base class for all pveshape errors."""
    pass


class TranslationError(PveshapeError):
    """A desired-state record could not be mapped to or from platform config.

    Always an internal defect: user input is validated before translation.
    """

    def __init__(self, message: str):
        super().__init__(f"{message}\n\n{BUG_MARKER}")


class GuestOperationError(PveshapeError):
    """A lifecycle step failed against the remote platform."""

    def __init__(self, operation: str, vmid: Optional[int], cause: Exception):
        self.operation = operation
        self.vmid = vmid
        self.cause = cause
        target = f"guest {vmid}" if vmid is not None else "guest"
        super().__init__(f"Could not {operation} {target}: {cause}")


class IncompleteCreateError(PveshapeError):
    """A guest was created but a later step of its creation failed.

    ``state`` is a record of the guest that now exists. Tracking it makes
    the next pass update that guest instead of creating another one.
    """

    def __init__(self, state, cause: Exception):
        self.state = state
        self.cause = cause
        super().__init__(f"Guest {state.vmid} was created but not completed: {cause}")


class GuestExistsError(PveshapeError):
    """An explicitly requested guest id is already taken."""

    def __init__(self, vmid: int):
        self.vmid = vmid
        super().__init__(f"Guest {vmid} already exists")


class IdAllocationError(PveshapeError):
    """Every freshly allocated id collided with a concurrent creator."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Gave up allocating a guest id after {attempts} collisions with concurrent creators"
        )


class CloneSourceNotFoundError(PveshapeError):
    """The clone source named in a declaration does not exist."""

    def __init__(self, source: str):
        self.source = source
        super().__init__(f"Could not clone guest, no template with ID/name '{source}' could be found")


class AddressPollTimeout(PveshapeError):
    """The guest agent never reported an address before the deadline."""

    def __init__(self, vmid: int, deadline: float):
        self.vmid = vmid
        self.deadline = deadline
        super().__init__(f"timeout waiting for agent to start on guest {vmid} after {deadline:g}s")


class ImportNotSupportedError(PveshapeError):
    """Importing existing guests is not implemented."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Importing existing {kind} guest state is not currently supported")


class AccessError(PveshapeError):
    """The API token cannot be used to manage guests."""
    pass
