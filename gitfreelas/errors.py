"""Errors raised by the query client and the task services."""

import re


class ClientError(Exception):
    """Base class for every query client error."""

    def __init__(self, message: str, *, model: str | None = None, meta: dict | None = None):
        super().__init__(message)
        self.model = model
        self.meta = meta or {}


class QueryValidationError(ClientError):
    pass


class RecordNotFoundError(ClientError):
    pass


class UniqueConstraintError(ClientError):
    def __init__(self, message: str, *, target: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.target = target or []


class ForeignKeyConstraintError(ClientError):
    pass


class TransactionError(ClientError):
    pass


class TransactionTimeoutError(TransactionError):
    pass


# Service layer

class ServiceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotAuthenticatedError(ServiceError):
    status_code = 401


class PermissionDeniedError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class InvalidStateError(ServiceError):
    status_code = 409


_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (.+)", re.IGNORECASE)
_PG_UNIQUE_KEY = re.compile(r"Key \((.+?)\)=")


def translate_integrity_error(exc, model: str | None = None) -> ClientError:
    """Map a ``sqlalchemy.exc.IntegrityError`` to a client error."""
    orig = getattr(exc, "orig", exc)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    text = str(orig)

    if pgcode == "23505" or "UNIQUE" in text.upper() or "duplicate key" in text:
        target = []
        match = _SQLITE_UNIQUE.search(text)
        if match:
            target = [part.strip().split(".")[-1] for part in match.group(1).split(",")]
        else:
            match = _PG_UNIQUE_KEY.search(text)
            if match:
                target = [part.strip() for part in match.group(1).split(",")]
        return UniqueConstraintError(
            f"Unique constraint failed on the fields: {', '.join(target) or 'unknown'}",
            target=target,
            model=model,
        )

    if pgcode == "23503" or "FOREIGN KEY" in text.upper():
        return ForeignKeyConstraintError(
            f"Foreign key constraint failed: {text}", model=model
        )

    return ClientError(f"Integrity error: {text}", model=model)
