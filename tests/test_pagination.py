import pytest

from core.exceptions import PaginationExhausted, StaleResultError, UpstreamFetchError
from core.generation import GenerationTracker
from core.pagination import fetch_all_pages
from feed_fakes import FakePageSource


def _rows(count: int) -> list[dict]:
    return [{"id": i} for i in range(count)]


@pytest.mark.asyncio
@pytest.mark.parametrize("full_pages", [0, 1, 3])
async def test_full_pages_then_short_page_fetch_exactly_n_plus_one(full_pages: int) -> None:
    source = FakePageSource(_rows(full_pages * 10 + 4))

    result = await fetch_all_pages(source, feed_name="test", page_size=10, max_pages=50)

    assert len(source.calls) == full_pages + 1
    assert result.pages_fetched == full_pages + 1
    assert len(result) == full_pages * 10 + 4
    assert not result.truncated
    assert [offset for _, offset in source.calls] == [i * 10 for i in range(full_pages + 1)]


@pytest.mark.asyncio
async def test_exact_multiple_ends_on_empty_page() -> None:
    source = FakePageSource(_rows(20))

    result = await fetch_all_pages(source, feed_name="test", page_size=10, max_pages=50)

    assert len(source.calls) == 3
    assert len(result) == 20


@pytest.mark.asyncio
async def test_page_cap_returns_partial_rows_flagged_truncated(caplog) -> None:
    source = FakePageSource(_rows(100))

    result = await fetch_all_pages(source, feed_name="big", page_size=10, max_pages=3)

    assert result.truncated
    assert len(result) == 30
    assert len(source.calls) == 3
    assert "page cap of 3 reached" in caplog.text


def test_exhausted_alias() -> None:
    assert PaginationExhausted.__name__ == "PaginationExhaustedError"


@pytest.mark.asyncio
async def test_transient_page_errors_are_retried() -> None:
    source = FakePageSource(_rows(3), failures=[ConnectionError("reset")])

    result = await fetch_all_pages(
        source,
        feed_name="flaky",
        page_size=10,
        max_retries=2,
        retry_delay=0,
    )

    assert len(result) == 3
    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_persistent_failure_becomes_upstream_fetch_error() -> None:
    source = FakePageSource(
        _rows(3),
        failures=[TimeoutError("slow"), TimeoutError("slow"), TimeoutError("slow")],
    )

    with pytest.raises(UpstreamFetchError) as excinfo:
        await fetch_all_pages(
            source,
            feed_name="down",
            page_size=10,
            max_retries=1,
            retry_delay=0,
        )

    assert excinfo.value.details["feed"] == "down"
    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried() -> None:
    source = FakePageSource(_rows(3), failures=[RuntimeError("bad query")])

    with pytest.raises(UpstreamFetchError):
        await fetch_all_pages(source, feed_name="bad", page_size=10, retry_delay=0)

    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_superseded_token_stops_fetching() -> None:
    tracker = GenerationTracker()
    token = tracker.activate({"reasons": ["A"]})
    tracker.activate({"reasons": ["B"]})
    source = FakePageSource(_rows(3))

    with pytest.raises(StaleResultError):
        await fetch_all_pages(source, feed_name="stale", page_size=10, token=token)

    assert source.calls == []


@pytest.mark.asyncio
async def test_invalid_page_size() -> None:
    with pytest.raises(ValueError):
        await fetch_all_pages(FakePageSource(), feed_name="x", page_size=0)
