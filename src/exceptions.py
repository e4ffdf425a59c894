# coding: utf8
"""
Describes exception classes used in pgsandbox.
"""


class pgsandboxException(Exception):
    """
    Generic pgsandbox exception.
    """

    pass


class ValidationError(pgsandboxException):
    """
    Cluster definition is invalid. Raised before any instance is touched.
    """

    pass


class CloneError(pgsandboxException):
    """
    Standby could not be cloned from its source.
    """

    pass


class StartupError(pgsandboxException):
    """
    Instance did not reach running state after all start attempts.
    """

    pass


class ProvisioningError(pgsandboxException):
    """
    Exception for fatal errors during cluster provisioning.
    """

    pass


class QueryError(pgsandboxException):
    """
    Query against a local instance failed
    """

    pass


class PGIsStartingUp(pgsandboxException):
    """
    Postgres is starting up
    """

    pass
