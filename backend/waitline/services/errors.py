"""Domain exceptions shared by the store, the services and the routers."""


class WaitlineError(Exception):
    """Base class for errors raised by waitline services."""


class StoreError(WaitlineError):
    """The database could not be reached or rejected a statement."""


class QueueCodeTaken(WaitlineError):
    """Inserting a queue failed because its code is already in use."""


class DuplicateMembership(WaitlineError):
    """A waiting entry with the same user or display name already exists."""

    def __init__(self, field: str):
        super().__init__(f"duplicate waiting {field}")
        self.field = field  # "user_id" or "display_name"


class AddressLookupError(WaitlineError):
    """The address search service returned an error."""
