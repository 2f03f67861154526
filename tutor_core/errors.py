"""Exception types raised by tutor_core."""


class TutorCoreError(Exception):
    """Base class for tutor_core errors."""


class SessionScopeError(TutorCoreError, RuntimeError):
    """A consumer accessor was used outside an active session scope."""


class ResponseServiceError(TutorCoreError):
    """The response-generation service failed or returned nothing usable."""


class SynthesisError(TutorCoreError):
    """A synthesis backend could not produce or play audio."""
