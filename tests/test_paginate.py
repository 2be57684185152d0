import pytest

from dslorm.core.errors import ValidationError


@pytest.mark.asyncio
async def test_pages_cover_every_row_once(orm):
    model = orm.model("user")
    for number in range(7):
        await model.create({"email": f"user{number}@example.com", "age": number})

    seen = []
    cursor = None
    pages = 0
    while True:
        page = await model.paginate(take=3, cursor=cursor)
        pages += 1
        seen.extend(row["email"] for row in page.items)
        if not page.has_next_page:
            break
        cursor = page.next_cursor

    assert pages == 3
    assert seen == [f"user{number}@example.com" for number in range(7)]


@pytest.mark.asyncio
async def test_page_flags(users):
    first = await users.paginate(take=2)
    second = await users.paginate(take=2, cursor=first.next_cursor)

    assert [row["name"] for row in first.items] == ["Ann", "Bob"]
    assert first.has_next_page is True
    assert first.has_prev_page is False
    assert first.page_size == 2

    # Inclusive cursor: the next page starts at the cursor row
    assert second.items[0]["id"] == first.next_cursor
    assert [row["name"] for row in second.items] == ["Cid", "Dee"]
    assert second.has_next_page is False
    assert second.next_cursor is None
    assert second.prev_cursor == first.next_cursor
    assert second.has_prev_page is True


@pytest.mark.asyncio
async def test_paginate_with_filter_and_order(users):
    page = await users.paginate({"age": {"gte": 25}}, order_by="age", take=5)

    assert [row["age"] for row in page.items] == [25, 31, 42]
    assert page.has_next_page is False


@pytest.mark.asyncio
async def test_paginate_empty_table(orm):
    page = await orm.model("post").paginate(take=3)

    assert page.items == []
    assert page.has_next_page is False
    assert page.next_cursor is None


@pytest.mark.asyncio
@pytest.mark.parametrize("take", [0, -1])
async def test_paginate_needs_positive_take(users, take):
    with pytest.raises(ValidationError):
        await users.paginate(take=take)
