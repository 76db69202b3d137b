# /telepharma/utils/errors.py

# Exception types shared by the conversation core and its collaborators.
# Field validation failures are not exceptions; see workflows/fields.py.


class PersistenceConflict(Exception):
    """A write lost a race: stale state version, or a unique key already taken."""

    VERSION_MISMATCH = "version_mismatch"
    DUPLICATE_CONTACT = "duplicate_contact"
    DUPLICATE_ORDER_NUMBER = "duplicate_order_number"
    DUPLICATE_CHECKOUT = "duplicate_checkout"

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class DeliveryFailure(Exception):
    """An outbound message could not be delivered on any channel."""

    def __init__(self, recipient: str, cause: str):
        self.recipient = recipient
        self.cause = cause
        super().__init__(f"Delivery to {recipient} failed: {cause}")


class CatalogDefect(Exception):
    """The flow catalog is malformed (missing reference, reserved token clash, cycle)."""

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class TransitionDepthExceeded(CatalogDefect):
    """A single inbound event chained more transitions than allowed."""


class IncompleteOrder(CatalogDefect):
    """An ordering flow finished without a field the order requires."""
