"""Error taxonomy for the compliance ledger.

None of these are retried inside the engine; they propagate to the caller
unchanged after the unit of work has rolled back.
"""


class ComplianceError(Exception):
    """Base class for every ledger error."""


class InvalidInputError(ComplianceError, ValueError):
    """Malformed or impossible input (zero energy, negative quantity, ...)."""


class ValidationError(ComplianceError):
    """Business-rule violation (over-banking, borrowing beyond the cap, ...)."""


class ConflictError(ComplianceError):
    """State conflict such as a ship already pooled for the year."""


class PoolNonCompliantError(ComplianceError):
    """Pool aggregate balance is negative; the pool is not formed."""


class FairnessViolationError(ComplianceError):
    """A pool allocation would leave a member worse off than alone."""
