import pytest
from sqlalchemy import exc as sa_exc

from dslorm.core.database import retry_transient
from dslorm.core.errors import (
    AuthenticationError,
    ConnectionError,
    ErrorKind,
    IntegrityError,
    OrmError,
    SchemaError,
    TransactionError,
    UNKNOWN_ERROR,
    classify,
    is_duplicate_constraint,
    is_transient,
    to_orm_error,
)


class FakeMySQLError(Exception):
    """Shaped like aiomysql/pymysql errors: args = (errno, message)."""


class FakeSQLiteError(Exception):
    def __init__(self, message, name=None):
        super().__init__(message)
        self.sqlite_errorname = name


def wrap(orig, exception_class=sa_exc.OperationalError):
    return exception_class("SELECT 1", {}, orig)


@pytest.mark.parametrize(
    "error, code, kind",
    [
        (wrap(FakeMySQLError(1062, "Duplicate entry 'a' for key 'email'"), sa_exc.IntegrityError), "L100", ErrorKind.INTEGRITY),
        (wrap(FakeMySQLError(1452, "Cannot add or update a child row")), "L101", ErrorKind.INTEGRITY),
        (wrap(FakeMySQLError(1146, "Table 'app.ghosts' doesn't exist")), "L300", ErrorKind.DATABASE),
        (wrap(FakeMySQLError(1064, "You have an error in your SQL syntax")), "L303", ErrorKind.SYNTAX),
        (wrap(FakeMySQLError(1045, "Access denied for user")), "L402", ErrorKind.AUTHENTICATION),
        (wrap(FakeMySQLError(1213, "Deadlock found")), "L501", ErrorKind.TRANSACTION),
        (wrap(FakeSQLiteError("UNIQUE constraint failed: users.email", "SQLITE_CONSTRAINT_UNIQUE")), "L100", ErrorKind.INTEGRITY),
        (wrap(FakeSQLiteError("NOT NULL constraint failed: users.email", "SQLITE_CONSTRAINT")), "L102", ErrorKind.INTEGRITY),
        (wrap(FakeSQLiteError("Cannot add a NOT NULL column with default value NULL")), "L102", ErrorKind.INTEGRITY),
        (wrap(FakeSQLiteError("no such table: ghosts")), "L300", ErrorKind.DATABASE),
        (wrap(FakeSQLiteError("database is locked", "SQLITE_BUSY")), "L500", ErrorKind.TRANSACTION),
    ],
)
def test_classify_known_codes(error, code, kind):
    info = classify(error)

    assert info.code == code
    assert info.kind == kind


def test_pool_timeout():
    assert classify(sa_exc.TimeoutError("QueuePool limit reached")).code == "L404"


@pytest.mark.parametrize(
    "error",
    [ValueError("boom"), wrap(FakeMySQLError(9999, "strange")), Exception()],
)
def test_unknown_errors_map_to_l000(error):
    assert classify(error) == UNKNOWN_ERROR


def test_classify_never_raises():
    class Hostile(Exception):
        def __str__(self):
            raise RuntimeError("cannot render")

    assert classify(Hostile()) == UNKNOWN_ERROR


def test_orm_errors_pass_through():
    error = SchemaError("bad schema")

    assert to_orm_error(error) is error
    assert classify(error).code == "L800"


def test_to_orm_error_picks_subclass():
    integrity = to_orm_error(wrap(FakeMySQLError(1062, "Duplicate entry"), sa_exc.IntegrityError))
    auth = to_orm_error(wrap(FakeMySQLError(1045, "Access denied")))
    deadlock = to_orm_error(wrap(FakeMySQLError(1205, "Lock wait timeout")))

    assert isinstance(integrity, IntegrityError)
    assert isinstance(auth, AuthenticationError)
    assert isinstance(auth, ConnectionError)
    assert isinstance(deadlock, TransactionError)
    assert str(integrity) == "[L100] Unique constraint failed (Duplicate entry)"


def test_to_dict_shape():
    error = OrmError("something odd")

    assert error.to_dict() == {
        "status": False,
        "kind": "orm_error",
        "code": "L700",
        "message": "something odd",
    }


def test_transient_detection():
    assert is_transient(wrap(FakeMySQLError(2013, "Lost connection to MySQL server")))
    assert is_transient(wrap(FakeSQLiteError("operation aborted")))
    assert not is_transient(wrap(FakeMySQLError(1062, "Duplicate entry")))


def test_duplicate_constraint_detection():
    assert is_duplicate_constraint(wrap(FakeMySQLError(1061, "Duplicate key name 'x'")))
    assert is_duplicate_constraint(wrap(FakeSQLiteError("index posts_title_unique already exists")))
    assert not is_duplicate_constraint(wrap(FakeMySQLError(1146, "Table doesn't exist")))


def flaky(failures, error):
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) <= failures:
            raise error
        return "ok"

    return operation, calls


@pytest.mark.asyncio
async def test_retry_transient_recovers_after_aborted_attempts():
    operation, calls = flaky(2, wrap(FakeMySQLError(2013, "Lost connection to MySQL server")))

    assert await retry_transient(operation, attempts=3, delay=0) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_transient_gives_up_after_attempts():
    operation, calls = flaky(5, wrap(FakeMySQLError(2013, "Lost connection to MySQL server")))

    with pytest.raises(sa_exc.OperationalError):
        await retry_transient(operation, attempts=2, delay=0)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_transient_does_not_retry_other_errors():
    operation, calls = flaky(1, wrap(FakeMySQLError(1062, "Duplicate entry"), sa_exc.IntegrityError))

    with pytest.raises(sa_exc.IntegrityError):
        await retry_transient(operation, attempts=3, delay=0)
    assert len(calls) == 1
