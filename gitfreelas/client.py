"""The query client: one delegate per model plus transactions and raw SQL."""

import enum
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import sessionmaker
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from . import config
from .database import create_db_engine
from .delegate import ModelDelegate
from .errors import TransactionError, TransactionTimeoutError, translate_integrity_error
from .models import Base

logger = logging.getLogger(__name__)


class TransactionIsolationLevel(str, enum.Enum):
    READ_UNCOMMITTED = "ReadUncommitted"
    READ_COMMITTED = "ReadCommitted"
    REPEATABLE_READ = "RepeatableRead"
    SERIALIZABLE = "Serializable"


_ISOLATION_LEVELS = {
    TransactionIsolationLevel.READ_UNCOMMITTED: "READ UNCOMMITTED",
    TransactionIsolationLevel.READ_COMMITTED: "READ COMMITTED",
    TransactionIsolationLevel.REPEATABLE_READ: "REPEATABLE READ",
    TransactionIsolationLevel.SERIALIZABLE: "SERIALIZABLE",
}

# Serialization failure, deadlock, lock timeout
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}
_TRANSIENT_MESSAGES = ("database is locked", "deadlock", "could not serialize")


@dataclass
class QueryParams:
    model: str
    action: str
    args: dict = field(default_factory=dict)


def _is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError) or isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    if getattr(orig, "pgcode", None) in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(fragment in message for fragment in _TRANSIENT_MESSAGES)


def _sql_isolation_level(level) -> str:
    if level in _ISOLATION_LEVELS.values():
        return level
    try:
        return _ISOLATION_LEVELS[TransactionIsolationLevel(level)]
    except ValueError:
        raise TransactionError(f"Invalid isolation level `{level}`") from None


class Client:
    """Entry point for every database operation.

    ``Client()`` connects to ``DATABASE_URL``; pass ``url`` or an existing
    ``engine`` to override. Inside :meth:`transaction` the callback gets a
    client bound to the transaction's session.
    """

    def __init__(self, url=None, engine=None, log_queries=None, _session=None, _middlewares=None):
        self.engine = engine if engine is not None else create_db_engine(url or config.DATABASE_URL)
        self.log_queries = config.LOG_QUERIES if log_queries is None else log_queries
        self._sessionmaker = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._session = _session
        self._middlewares = _middlewares if _middlewares is not None else []

        self.user = ModelDelegate(self, "user")
        self.session = ModelDelegate(self, "session")
        self.account = ModelDelegate(self, "account")
        self.verification = ModelDelegate(self, "verification")
        self.task = ModelDelegate(self, "task")
        self.task_developer = ModelDelegate(self, "task_developer")
        self.task_repository = ModelDelegate(self, "task_repository")
        self.blockchain_transaction = ModelDelegate(self, "blockchain_transaction")

    @property
    def in_transaction(self) -> bool:
        return self._session is not None

    # Lifecycle

    def create_all(self):
        Base.metadata.create_all(bind=self.engine)

    def connect(self):
        self.create_all()
        return self

    def disconnect(self):
        if not self.in_transaction:
            self.engine.dispose()

    # Extensions

    def use(self, middleware):
        """Register ``middleware(params, call_next)`` around every query."""
        self._middlewares.append(middleware)
        return self

    def _dispatch(self, params: QueryParams, final):
        middlewares = list(self._middlewares)

        def call(index, current):
            if index == len(middlewares):
                return final(current)
            return middlewares[index](current, lambda next_params: call(index + 1, next_params))

        return call(0, params)

    @contextmanager
    def _session_scope(self):
        if self._session is not None:
            yield self._session
            return
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Transactions

    def transaction(self, fn, isolation_level=None, timeout=None, max_wait=None):
        """Run ``fn(tx)`` (or a list of such callables) in one transaction.

        Commits when the callback returns and rolls back on any exception.
        Serialization failures and deadlocks are retried.
        """
        if self.in_transaction:
            raise TransactionError("Nested transactions are not supported")
        timeout = config.TRANSACTION_TIMEOUT_MS if timeout is None else timeout
        max_wait = config.TRANSACTION_MAX_WAIT_MS if max_wait is None else max_wait

        retrying = Retrying(
            stop=stop_after_attempt(max(1, config.TRANSACTION_MAX_RETRIES)),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        return retrying(self._run_transaction, fn, isolation_level, timeout, max_wait)

    def _run_transaction(self, fn, isolation_level, timeout, max_wait):
        session = self._sessionmaker()
        try:
            start = time.monotonic()
            options = {}
            if isolation_level is not None:
                options["isolation_level"] = _sql_isolation_level(isolation_level)
            session.connection(execution_options=options)
            waited = (time.monotonic() - start) * 1000
            if max_wait and waited > max_wait:
                raise TransactionError(
                    f"Unable to start a transaction in the given time ({waited:.0f}ms > {max_wait}ms)"
                )

            tx = Client(engine=self.engine, log_queries=self.log_queries,
                        _session=session, _middlewares=list(self._middlewares))
            if callable(fn):
                result = fn(tx)
            else:
                result = [step(tx) for step in fn]

            elapsed = (time.monotonic() - start) * 1000
            if timeout and elapsed > timeout:
                raise TransactionTimeoutError(
                    f"Transaction already closed: the timeout for this transaction was {timeout}ms, "
                    f"however {elapsed:.0f}ms passed since the start of the transaction"
                )
            session.commit()
            logger.debug("transaction committed in %.1fms", elapsed)
            return result
        except IntegrityError as exc:
            session.rollback()
            raise translate_integrity_error(exc) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Raw SQL

    def query_raw(self, sql: str, **params) -> list[dict]:
        with self._session_scope() as session:
            return [dict(row) for row in session.execute(text(sql), params).mappings()]

    def execute_raw(self, sql: str, **params) -> int:
        try:
            with self._session_scope() as session:
                return session.execute(text(sql), params).rowcount
        except IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
