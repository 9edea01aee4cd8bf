"""
errors.py: typed failures raised by the hotspot engine.

Every error carries an HTTP status so main.py can register one exception
handler for the whole family and the core never imports FastAPI.

  ValidationError        422  malformed input, terminal
  NotFoundError          404  referenced hotspot / report does not exist
  ConflictError          409  optimistic version race, retry the whole absorb
  StoreUnavailableError  503  I/O failure or timeout, retry with backoff
"""


class NoiseMapError(Exception):
    """Base class for engine failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(NoiseMapError):
    """Malformed or out-of-range input, rejected before persistence."""

    status_code = 422


class NotFoundError(NoiseMapError):
    status_code = 404


class ConflictError(NoiseMapError):
    status_code = 409


class StoreUnavailableError(NoiseMapError):
    status_code = 503
