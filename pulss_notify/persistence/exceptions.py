"""Persistence layer exceptions.

Every database failure surfaces as a PersistenceError subclass so callers can
handle storage problems with one except clause.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when the database cannot be initialised or reached.

    Examples:
    - Malformed DATABASE_URL
    - SQLite file directory not writable
    - Server refusing connections
    """

    pass


class RecordNotFoundError(PersistenceError):
    """Raised when an operation requires a row that does not exist.

    Plain lookups return None instead.
    """

    pass


class DataIntegrityError(PersistenceError):
    """Raised on a constraint violation (duplicate key, missing foreign key)."""

    pass
