"""
Error taxonomy shared by every layer.

Each class corresponds to one failure kind; the API layer maps them to
HTTP status codes and the CLI prints their message.
"""


class FleetError(Exception):
    """Base class for all cloud manager errors."""

    status_code = 500


class NotFoundError(FleetError):
    """A registry lookup did not match any row."""

    status_code = 404


class ConflictError(FleetError):
    """A write would violate a uniqueness constraint."""

    status_code = 409


class ValidationError(FleetError):
    """A create/update request is malformed."""

    status_code = 400


class RuntimeUnavailableError(FleetError, RuntimeError):
    """The container runtime cannot be reached at all."""

    status_code = 503


class RuntimeOperationError(FleetError, RuntimeError):
    """A container, volume, network or image operation failed."""

    status_code = 500


class ConfigDeploymentError(FleetError, RuntimeError):
    """Writing the routing document into the proxy container failed."""

    status_code = 500
