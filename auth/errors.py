"""
auth/errors.py -- Domain exceptions raised by the auth stores.

Route handlers never see SQLAlchemy exceptions from the security-sensitive
stores. Storage failures are wrapped in StoreUnavailableError so the API layer
can fail closed (503) with a generic message while the original error is
logged with its traceback.
"""


class StoreUnavailableError(RuntimeError):
    """The shared store could not complete a security-sensitive operation.

    Raised for lock timeouts, lost connections, and any other SQLAlchemyError
    on the rate-limit, lockout, and session write paths. Callers must deny the
    operation rather than continue without the store's answer.
    """
