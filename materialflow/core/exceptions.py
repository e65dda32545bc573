"""Exception taxonomy for the extraction pipeline.

Isolation boundaries, outermost to innermost: job -> file -> batch /
agent stage / matching chunk. Inner failures are caught and recorded at
their own boundary; only InputError on job-level lookups,
JobDeadlineExceeded, PersistenceError and unexpected errors fail a whole
job.
"""

from __future__ import annotations


class ExtractionError(Exception):
    """Base exception for all pipeline errors."""

    pass


class InputError(ExtractionError):
    """Missing job or schema, empty submission, or invalid document bytes."""

    pass


class CallTimeoutError(ExtractionError):
    """A model call did not finish before its timer fired.

    The underlying call is abandoned, not cancelled.
    """

    pass


class ResponseParseError(ExtractionError):
    """Model output could not be repaired into the expected JSON shape."""

    pass


class ExternalCallError(ExtractionError):
    """Provider-level failure (all configured LLM providers failed)."""

    pass


class JobDeadlineExceeded(ExtractionError):
    """The job's wall-clock deadline passed at a file boundary."""

    pass


class PersistenceError(ExtractionError):
    """A job log or progress write failed; the job cannot continue."""

    pass
