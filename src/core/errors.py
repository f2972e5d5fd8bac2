"""
Error taxonomy for the pipeline.

Only StoreUnavailableError is allowed to escape a stage and abort an
invocation. Everything else is caught at the item or source level.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class OracleError(PipelineError):
    """The oracle timed out or returned empty, malformed or off-schema output."""


class AcquisitionError(PipelineError):
    """A content source could not be fetched or searched."""


class StoreUnavailableError(PipelineError):
    """The persisted store cannot be reached."""


class IllegalTransitionError(PipelineError):
    """A record was asked to move to a state its current state does not allow."""
