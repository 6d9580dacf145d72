import asyncio
from datetime import date

import pytest

from bookshare.exceptions import Conflict, MessageRejected, NetworkError, NotFound, Unauthorized
from bookshare.services.notification_cache import NotificationCache
from bookshare.services.share_service import ShareService
from bookshare.share_status import ShareStatus
from bookshare.timeline import derive_timeline


@pytest.fixture
def service(api_client):
    return ShareService(api_client)


def test_listing_is_sorted_by_status_then_title(service, backend):
    backend.add_share(1, ShareStatus.PICKED_UP, title="b title")
    backend.add_share(2, ShareStatus.REQUESTED, title="Zen")
    backend.add_share(3, ShareStatus.PICKED_UP, title="A title")
    backend.add_share(4, ShareStatus.DECLINED, title="Aardvark")
    shares = asyncio.run(service.list_borrower_shares())
    assert [s.id for s in shares] == [2, 3, 1, 4]


def test_listings_by_role_and_partition(service, backend):
    backend.add_share(1)
    backend.add_share(2, ShareStatus.HOME_SAFE, archived=True)
    backend.add_share(3, owner_id="borrower-1", borrower_id="someone-else")

    async def scenario():
        return (
            await service.list_borrower_shares(),
            await service.list_borrower_shares(archived=True),
            await service.list_lender_shares(),
        )

    active, archived, lent = asyncio.run(scenario())
    assert [s.id for s in active] == [1]
    assert [s.id for s in archived] == [2]
    assert [s.id for s in lent] == [3]
    assert service.find_share(3).owner_id == "borrower-1"
    assert service.find_share(99) is None


def test_listing_failure_keeps_last_known_good(service, backend):
    backend.add_share(1)

    async def scenario():
        first = await service.list_borrower_shares()
        backend.fail("GET", "/shares/borrower", 500)
        second = await service.list_borrower_shares()
        return first, second

    first, second = asyncio.run(scenario())
    assert [s.id for s in second] == [s.id for s in first] == [1]
    assert isinstance(service.read_errors["borrower"], NetworkError)


def test_listing_failure_without_cache_returns_empty(service, backend):
    backend.fail("GET", "/shares/lender", 500)
    assert asyncio.run(service.list_lender_shares()) == []
    assert "lender" in service.read_errors


def test_successful_read_clears_error(service, backend):
    backend.fail("GET", "/shares/borrower", 500)
    asyncio.run(service.list_borrower_shares())
    backend.failures.clear()
    asyncio.run(service.list_borrower_shares())
    assert service.read_errors == {}


def test_advance_sends_capitalised_status_and_returns_server_copy(service, backend):
    backend.add_share(1, ShareStatus.READY)
    share = asyncio.run(service.advance_status(1, ShareStatus.PICKED_UP))
    assert share.status is ShareStatus.PICKED_UP
    assert backend.bodies[-1] == {"Status": 3}


def test_owner_confirms_home_safe(service, backend, make_share):
    backend.add_share(1, ShareStatus.RETURNED)
    current = make_share(1, ShareStatus.RETURNED)
    share = asyncio.run(service.advance_status(1, ShareStatus.HOME_SAFE, current=current, user_id="owner-1"))
    assert share.status is ShareStatus.HOME_SAFE
    steps = derive_timeline(share)
    assert len(steps) == 5
    assert steps[-1].current and steps[-1].terminal.value == "success"


def test_advance_precheck_rejects_wrong_role(service, backend, make_share):
    backend.add_share(1, ShareStatus.REQUESTED)
    with pytest.raises(Unauthorized):
        asyncio.run(service.advance_status(1, ShareStatus.READY, current=make_share(1), user_id="borrower-1"))
    assert backend.count("PUT", "/shares/1/status") == 0


def test_advance_precheck_rejects_illegal_transition(service, backend, make_share):
    current = make_share(1, ShareStatus.HOME_SAFE)
    with pytest.raises(Conflict):
        asyncio.run(service.advance_status(1, ShareStatus.READY, current=current, user_id="owner-1"))
    assert backend.requests == []


def test_server_errors_propagate_from_mutations(service, backend):
    with pytest.raises(NotFound):
        asyncio.run(service.advance_status(42, ShareStatus.READY))
    backend.add_share(1)
    backend.fail("PUT", "/shares/1/status", 409)
    with pytest.raises(Conflict):
        asyncio.run(service.advance_status(1, ShareStatus.READY))


def test_decline_is_owner_only(service, backend, make_share):
    backend.add_share(1)
    with pytest.raises(Unauthorized):
        asyncio.run(service.decline(1, current=make_share(1), user_id="borrower-1"))
    share = asyncio.run(service.decline(1, current=make_share(1), user_id="owner-1"))
    assert share.status is ShareStatus.DECLINED
    assert len(derive_timeline(share)) == 2


def test_mutation_replaces_cached_copy(service, backend):
    backend.add_share(1, ShareStatus.READY)

    async def scenario():
        await service.list_borrower_shares()
        await service.advance_status(1, ShareStatus.PICKED_UP)

    asyncio.run(scenario())
    assert service.find_share(1).status is ShareStatus.PICKED_UP


def test_update_return_date(service, backend, make_share):
    backend.add_share(1, ShareStatus.PICKED_UP)
    share = asyncio.run(
        service.update_return_date(1, date(2026, 12, 24), current=make_share(1, ShareStatus.PICKED_UP), user_id="owner-1")
    )
    assert backend.bodies[-1] == {"returnDate": "2026-12-24T00:00:00Z"}
    assert share.return_date.date() == date(2026, 12, 24)


def test_update_return_date_prechecks(service, make_share):
    with pytest.raises(Unauthorized):
        asyncio.run(service.update_return_date(1, "2026-12-24", current=make_share(1), user_id="borrower-1"))
    with pytest.raises(Conflict):
        asyncio.run(
            service.update_return_date(1, "2026-12-24", current=make_share(1, ShareStatus.DECLINED), user_id="owner-1")
        )


def test_dispute(service, backend, make_share):
    backend.add_share(1, ShareStatus.REQUESTED)
    share = asyncio.run(service.dispute(1, current=make_share(1), user_id="borrower-1"))
    assert share.is_disputed
    assert share.disputed_by == "borrower-1"
    assert [s.status.name for s in derive_timeline(share)] == ["REQUESTED", "DISPUTED"]


@pytest.mark.parametrize(
    "status, disputed",
    [(ShareStatus.HOME_SAFE, False), (ShareStatus.PICKED_UP, True), (ShareStatus.DECLINED, False)],
)
def test_dispute_precheck_conflicts(service, backend, make_share, status, disputed):
    current = make_share(1, status, is_disputed=disputed)
    with pytest.raises(Conflict):
        asyncio.run(service.dispute(1, current=current, user_id="owner-1"))
    assert backend.requests == []


def test_dispute_by_stranger_is_unauthorized(service, make_share):
    with pytest.raises(Unauthorized):
        asyncio.run(service.dispute(1, current=make_share(1), user_id="stranger"))


def test_archive_and_unarchive_move_share_between_listings(service, backend, make_share):
    backend.add_share(1, ShareStatus.HOME_SAFE)
    current = make_share(1, ShareStatus.HOME_SAFE)

    async def scenario():
        await service.list_borrower_shares()
        await service.archive(1, current=current, user_id="borrower-1")
        cached_after_archive = service.cached_listing("borrower")
        archived = await service.list_borrower_shares(archived=True)
        await service.unarchive(1, current=current, user_id="borrower-1")
        return cached_after_archive, archived, service.cached_listing("borrower", archived=True)

    cached_after_archive, archived, cached_after_unarchive = asyncio.run(scenario())
    assert cached_after_archive == []
    assert [s.id for s in archived] == [1]
    assert cached_after_unarchive == []
    assert 1 not in backend.archived


def test_archive_active_share_conflicts(service, make_share):
    with pytest.raises(Conflict):
        asyncio.run(service.archive(1, current=make_share(1, ShareStatus.READY), user_id="owner-1"))


def test_mutation_refreshes_notification_cache(api_client, backend):
    backend.add_share(1, ShareStatus.READY)
    backend.add_notification(10, 1, "ShareStatusChanged")
    cache = NotificationCache(api_client)
    service = ShareService(api_client, notification_cache=cache)
    asyncio.run(service.advance_status(1, ShareStatus.PICKED_UP))
    assert backend.count("GET", "/notifications") == 1
    assert cache.status_changed(1)


def test_mutations_on_same_share_are_serialized(service, backend):
    backend.add_share(1, ShareStatus.READY)
    active = []
    overlaps = []
    client = service.client
    original = client.put_json

    async def slow_put(path, payload=None):
        active.append(path)
        if len(active) > 1:
            overlaps.append(path)
        await asyncio.sleep(0.01)
        try:
            return await original(path, payload)
        finally:
            active.remove(path)

    client.put_json = slow_put

    async def scenario():
        await asyncio.gather(
            service.advance_status(1, ShareStatus.PICKED_UP),
            service.update_return_date(1, "2026-12-01"),
        )

    asyncio.run(scenario())
    assert overlaps == []


def test_chat_history_and_rest_send(service, backend):
    backend.add_messages(1, 3)

    async def scenario():
        page = await service.get_chat_messages(1, page=1, page_size=2)
        sent = await service.send_chat_message(1, "  hello  ")
        return page, sent

    page, sent = asyncio.run(scenario())
    assert len(page.messages) == 2
    assert page.has_next_page
    assert page.total_count == 3
    assert sent.content == "hello"
    assert backend.bodies[-1] == {"content": "hello"}


def test_rest_send_rejects_blank_messages(service, backend):
    with pytest.raises(MessageRejected):
        asyncio.run(service.send_chat_message(1, "   "))
    assert backend.requests == []
