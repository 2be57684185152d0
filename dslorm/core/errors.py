"""
ERRORS MODULE - Stable error taxonomy and backend error classification

Purpose:
    1. Define the exceptions every public operation raises
    2. Map backend-specific codes (MySQL errno / SQLSTATE, SQLite error names)
       to a stable {kind, code, message} triple
    3. Recognise the few failures reconciliation treats as benign or transient

Data Flow:
    driver error → SQLAlchemy DBAPIError → classify() → ErrorInfo → to_orm_error()
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


# =========================
# Taxonomy
# =========================
class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    INTEGRITY = "integrity_error"
    DATABASE = "database_error"
    CONNECTION = "connection_error"
    AUTHENTICATION = "authentication_error"
    AUTHORIZATION = "authorization_error"
    TRANSACTION = "transaction_error"
    SYNTAX = "syntax_error"
    SCHEMA = "schema_error"
    RECONCILIATION = "reconciliation_error"
    ORM = "orm_error"
    UNKNOWN = "unknown_error"


class ErrorInfo(BaseModel):
    kind: ErrorKind
    code: str
    message: str

    model_config = ConfigDict(frozen=True)


UNKNOWN_ERROR = ErrorInfo(
    kind=ErrorKind.UNKNOWN, code="L000", message="Unknown database error"
)


def _info(code: str, kind: ErrorKind, message: str) -> ErrorInfo:
    return ErrorInfo(kind=kind, code=code, message=message)


# Keys are str(errno) for MySQL, SQLSTATE strings, or SQLite extended error names
ERROR_CODES: Dict[str, ErrorInfo] = {
    # Integrity
    "1062": _info("L100", ErrorKind.INTEGRITY, "Unique constraint failed (Duplicate entry)"),
    "1452": _info("L101", ErrorKind.INTEGRITY, "Foreign key constraint failed"),
    "1451": _info("L101", ErrorKind.INTEGRITY, "Foreign key constraint failed"),
    "1048": _info("L102", ErrorKind.INTEGRITY, "NOT NULL constraint failed"),
    "4025": _info("L103", ErrorKind.INTEGRITY, "Check constraint failed"),
    "3819": _info("L103", ErrorKind.INTEGRITY, "Check constraint failed"),
    "1068": _info("L104", ErrorKind.INTEGRITY, "Primary key conflict"),
    "SQLITE_CONSTRAINT_UNIQUE": _info("L100", ErrorKind.INTEGRITY, "Unique constraint failed (Duplicate entry)"),
    "SQLITE_CONSTRAINT_FOREIGNKEY": _info("L101", ErrorKind.INTEGRITY, "Foreign key constraint failed"),
    "SQLITE_CONSTRAINT_NOTNULL": _info("L102", ErrorKind.INTEGRITY, "NOT NULL constraint failed"),
    "SQLITE_CONSTRAINT_CHECK": _info("L103", ErrorKind.INTEGRITY, "Check constraint failed"),
    "SQLITE_CONSTRAINT_PRIMARYKEY": _info("L104", ErrorKind.INTEGRITY, "Primary key conflict"),
    # Bad values
    "1264": _info("L200", ErrorKind.VALIDATION, "Value out of range"),
    "1366": _info("L201", ErrorKind.VALIDATION, "Invalid encoding"),
    "1292": _info("L202", ErrorKind.VALIDATION, "Invalid date format"),
    # Missing objects
    "1146": _info("L300", ErrorKind.DATABASE, "Table not found"),
    "1054": _info("L301", ErrorKind.DATABASE, "Column not found"),
    "1064": _info("L303", ErrorKind.SYNTAX, "Invalid SQL syntax"),
    # Transactions
    "1205": _info("L500", ErrorKind.TRANSACTION, "Transaction deadlock detected"),
    "1213": _info("L501", ErrorKind.TRANSACTION, "Transaction rollback"),
    "SQLITE_BUSY": _info("L500", ErrorKind.TRANSACTION, "Transaction deadlock detected"),
    "SQLITE_LOCKED": _info("L501", ErrorKind.TRANSACTION, "Transaction rollback"),
    # Connection / access
    "1040": _info("L400", ErrorKind.CONNECTION, "Too many connections"),
    "2003": _info("L401", ErrorKind.CONNECTION, "Database connection failed"),
    "2006": _info("L401", ErrorKind.CONNECTION, "Database connection failed"),
    "2013": _info("L401", ErrorKind.CONNECTION, "Database connection failed"),
    "SQLITE_CANTOPEN": _info("L401", ErrorKind.CONNECTION, "Database connection failed"),
    "1045": _info("L402", ErrorKind.AUTHENTICATION, "Invalid database credentials"),
    "28000": _info("L402", ErrorKind.AUTHENTICATION, "Invalid database credentials"),
    "1044": _info("L403", ErrorKind.AUTHORIZATION, "Access denied"),
    "42000": _info("L403", ErrorKind.AUTHORIZATION, "Access denied"),
    "SQLITE_AUTH": _info("L403", ErrorKind.AUTHORIZATION, "Access denied"),
    "1141": _info("L901", ErrorKind.AUTHORIZATION, "Unauthorized access"),
    "1105": _info("L700", ErrorKind.ORM, "Unexpected ORM error"),
}

POOL_TIMEOUT_ERROR = _info("L404", ErrorKind.CONNECTION, "Connection pool exhausted")

# SQLite reports most failures as a generic code, so fall back on the message
MESSAGE_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"UNIQUE constraint failed", re.I), "SQLITE_CONSTRAINT_UNIQUE"),
    (re.compile(r"FOREIGN KEY constraint failed", re.I), "SQLITE_CONSTRAINT_FOREIGNKEY"),
    (re.compile(r"NOT NULL constraint failed", re.I), "SQLITE_CONSTRAINT_NOTNULL"),
    (re.compile(r"Cannot add a NOT NULL column", re.I), "SQLITE_CONSTRAINT_NOTNULL"),
    (re.compile(r"CHECK constraint failed", re.I), "SQLITE_CONSTRAINT_CHECK"),
    (re.compile(r"no such table", re.I), "1146"),
    (re.compile(r"no such column|has no column named", re.I), "1054"),
    (re.compile(r"syntax error", re.I), "1064"),
    (re.compile(r"database is locked", re.I), "SQLITE_BUSY"),
    (re.compile(r"unable to open database", re.I), "SQLITE_CANTOPEN"),
)

# Connection-level failures that are safe to retry
TRANSIENT_CODES = {"2006", "2013", "1053", "1927"}
# ER_DUP_KEYNAME, ER_FK_DUP_NAME, ER_DUP_KEY
DUPLICATE_CONSTRAINT_CODES = {"1061", "1826", "1022"}


# =========================
# Exceptions
# =========================
class OrmError(Exception):
    """Base class for every error the ORM raises."""

    kind = ErrorKind.ORM
    default_code = "L700"

    def __init__(self, message: str, code: Optional[str] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": False,
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(OrmError):
    kind = ErrorKind.VALIDATION
    default_code = "L600"


class SchemaError(OrmError):
    kind = ErrorKind.SCHEMA
    default_code = "L800"


class ConnectionError(OrmError):
    kind = ErrorKind.CONNECTION
    default_code = "L401"


class AuthenticationError(ConnectionError):
    kind = ErrorKind.AUTHENTICATION
    default_code = "L402"


class AuthorizationError(OrmError):
    kind = ErrorKind.AUTHORIZATION
    default_code = "L403"


class IntegrityError(OrmError):
    kind = ErrorKind.INTEGRITY
    default_code = "L100"


class DatabaseError(OrmError):
    kind = ErrorKind.DATABASE
    default_code = "L300"


class TransactionError(OrmError):
    kind = ErrorKind.TRANSACTION
    default_code = "L500"


class QuerySyntaxError(OrmError):
    kind = ErrorKind.SYNTAX
    default_code = "L303"


class ReconciliationError(OrmError):
    kind = ErrorKind.RECONCILIATION
    default_code = "L810"

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        action: Optional[str] = None,
        cause: Optional[ErrorInfo] = None,
    ):
        super().__init__(message)
        self.entity = entity
        self.action = action
        self.cause = cause
        # Partial ReconciliationReport, set by the pipeline when a run fails
        self.report = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["entity"] = self.entity
        data["action"] = self.action
        data["cause"] = self.cause.model_dump(mode="json") if self.cause else None
        return data


EXCEPTION_FOR_KIND = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.INTEGRITY: IntegrityError,
    ErrorKind.DATABASE: DatabaseError,
    ErrorKind.CONNECTION: ConnectionError,
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.AUTHORIZATION: AuthorizationError,
    ErrorKind.TRANSACTION: TransactionError,
    ErrorKind.SYNTAX: QuerySyntaxError,
    ErrorKind.SCHEMA: SchemaError,
    ErrorKind.ORM: OrmError,
    ErrorKind.UNKNOWN: OrmError,
}


# =========================
# Classification
# =========================
def _driver_error(error: BaseException) -> BaseException:
    # SQLAlchemy wraps the DBAPI exception in .orig
    if isinstance(error, sa_exc.DBAPIError) and error.orig is not None:
        return error.orig
    return error


def backend_code(error: BaseException) -> Optional[str]:
    """
    Extract the backend's own error code from an exception.

    Handles:
        - MySQL drivers (aiomysql/pymysql/asyncmy): args[0] is the errno
        - sqlite3: sqlite_errorname ("SQLITE_CONSTRAINT_UNIQUE", ...)
        - Drivers exposing errno / sqlstate attributes
    """
    candidates = [_driver_error(error)]
    cause = candidates[0].__cause__
    if cause is not None:
        candidates.append(cause)

    for candidate in candidates:
        args = getattr(candidate, "args", ())
        if args and isinstance(args[0], int) and not isinstance(args[0], bool):
            return str(args[0])

        for attribute in ("sqlite_errorname", "errno", "sqlstate", "pgcode"):
            value = getattr(candidate, attribute, None)
            if value:
                return str(value)
    return None


def _message_code(error: BaseException) -> Optional[str]:
    text = str(_driver_error(error))
    for pattern, code in MESSAGE_PATTERNS:
        if pattern.search(text):
            return code
    return None


def classify(error: BaseException) -> ErrorInfo:
    """
    Map any exception to a stable ErrorInfo.

    Never raises: unrecognised input maps to UNKNOWN_ERROR (L000).

    Example:
        classify(IntegrityError(..., orig=pymysql.err.IntegrityError(1062, ...)))
        → ErrorInfo(kind=integrity_error, code="L100", ...)
    """
    try:
        if isinstance(error, OrmError):
            return ErrorInfo(kind=error.kind, code=error.code, message=error.message)

        if isinstance(error, sa_exc.TimeoutError):
            return POOL_TIMEOUT_ERROR

        code = backend_code(error)
        if code in ERROR_CODES:
            return ERROR_CODES[code]

        # Generic SQLite codes ("SQLITE_ERROR", "SQLITE_CONSTRAINT") need the message
        fallback = _message_code(error)
        if fallback in ERROR_CODES:
            return ERROR_CODES[fallback]

        if isinstance(error, (sa_exc.DisconnectionError, sa_exc.InterfaceError)):
            return ERROR_CODES["2003"]

        return UNKNOWN_ERROR
    except Exception as classify_error:
        logger.debug(f"Failed to classify {error!r}: {classify_error}")
        return UNKNOWN_ERROR


def to_orm_error(error: BaseException) -> OrmError:
    """Turn a backend exception into the matching OrmError subclass."""
    if isinstance(error, OrmError):
        return error
    info = classify(error)
    exception_class = EXCEPTION_FOR_KIND.get(info.kind, OrmError)
    return exception_class(info.message, code=info.code, kind=info.kind)


def is_transient(error: BaseException) -> bool:
    """True for connection-level failures worth retrying ("aborted" operations)."""
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    if isinstance(error, sa_exc.DisconnectionError):
        return True
    if backend_code(error) in TRANSIENT_CODES:
        return True
    return "aborted" in str(_driver_error(error)).lower()


def is_duplicate_constraint(error: BaseException) -> bool:
    """True when the backend refuses a constraint/index because the name exists."""
    if backend_code(error) in DUPLICATE_CONSTRAINT_CODES:
        return True
    text = str(_driver_error(error)).lower()
    return "duplicate key name" in text or "duplicate foreign key" in text or (
        "index" in text and "already exists" in text
    )
