"""Error taxonomy for generation, storage and propagation."""


class VaultEngineError(Exception):
    """Base class for all engine errors."""


class GenerationError(VaultEngineError):
    """A generation call failed and should not be retried (bad request, auth)."""

    retryable = False


class TransientGenerationError(GenerationError):
    """Timeout or provider-side failure. Retried with backoff."""

    retryable = True


class StructuralParseError(GenerationError):
    """Generation output could not be parsed as the expected JSON document."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class VersionConflictError(VaultEngineError):
    """A version insert collided with a concurrent writer (unique violation)."""


class ConcurrencyConflictError(VaultEngineError):
    """Version conflicts persisted past the retry budget."""

    def __init__(self, key: dict, attempts: int):
        super().__init__(f"Version conflict on {key} not resolved after {attempts} attempts")
        self.key = key
        self.attempts = attempts


class FieldWriteError(VaultEngineError):
    """A field write was rejected before reaching the store."""
