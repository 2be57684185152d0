import pytest
import pytest_asyncio

from dslorm.core.config import Settings
from dslorm.core.parser import parse_schema_text
from dslorm.main import ORM

SCHEMA_TEMPLATE = """
datasource db {{
    provider = "sqlite"
    url      = "file:{path}"
}}

model User {{
    id        Int      @id @default(autoincrement())
    email     String   @unique
    name      String?
    role      String   @default("user")
    age       Int?
    bio       String?  @text
    createdAt DateTime @default(now())
}}

model Post {{
    id        Int      @id
    title     String
    authorId  Int?     @references(User.id) @onDelete(SET_NULL)
    updatedAt DateTime @updatedAt
}}
"""


# Settings isolated from any local .env
@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        RECONCILE_RETRY_DELAY=0,
        READ_RETRY_DELAY=0,
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def schema_source(db_path):
    return SCHEMA_TEMPLATE.format(path=db_path)


@pytest.fixture
def schema(schema_source):
    return parse_schema_text(schema_source, env={})


# Fresh database file per test, tables created by reconciliation
@pytest_asyncio.fixture(scope="function")
async def orm(schema, test_settings):
    async with ORM(schema, settings=test_settings) as instance:
        await instance.reconcile()
        yield instance


@pytest_asyncio.fixture(scope="function")
async def users(orm):
    model = orm.model("User")
    for email, name, role, age in [
        ("ann@example.com", "Ann", "admin", 31),
        ("bob@example.com", "Bob", "user", 25),
        ("cid@example.com", "Cid", "user", None),
        ("dee@example.com", "Dee", "editor", 42),
    ]:
        await model.create({"email": email, "name": name, "role": role, "age": age})
    return model
