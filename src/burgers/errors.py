"""Exception types raised by the Burgers solver."""


class BurgersError(Exception):
    """Base class for all recognized solver failures."""


class ConfigurationError(BurgersError, ValueError):
    """Invalid parameters, dimension mismatches or unknown names."""


class StaleDofsError(BurgersError):
    """A DofHandler was used after the mesh it was built on changed."""


class ConstraintError(BurgersError):
    """Invalid use of a constraint set (closed, cyclic, ...)."""


class SolverError(BurgersError):
    """The linear solver failed or did not converge when required to."""
