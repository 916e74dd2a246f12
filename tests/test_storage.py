"""
Tests for the document store primitives, the in-memory backend,
the budget repository and the receipt image caches.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal

from zerosum.models.budget import Account, MonthlyAllocation, Transaction
from zerosum.services.cache import FileImageCache, InMemoryImageCache, encode_image
from zerosum.services.storage import (
    BudgetRepository,
    Document,
    InMemoryDocumentStore,
    NotFoundError,
    Query,
    TransientRemoteError,
    WriteBatch,
    from_document,
    to_document,
    transactions_from_snapshot,
)
from zerosum.services.storage.interface import add_increment


def docs(*rows):
    return [Document(doc_id, data) for doc_id, data in rows]


class TestQuery:
    """Tests for query filtering, ordering and limits."""

    def test_filters_combine(self):
        """All filters must match."""
        query = Query("c").where("date", ">=", "2024-05-01").where("date", "<", "2024-06-01")
        result = query.apply(docs(
            ("a", {"date": "2024-04-30"}),
            ("b", {"date": "2024-05-01"}),
            ("c", {"date": "2024-05-31"}),
            ("d", {"date": "2024-06-01"}),
        ))
        assert [d.id for d in result] == ["b", "c"]

    def test_missing_field_does_not_match(self):
        query = Query("c").where("month", "==", "2024-05")
        assert query.apply(docs(("a", {}))) == []

    def test_in_filter(self):
        query = Query("c").where("status", "in", ["pending", "failed"])
        result = query.apply(docs(("a", {"status": "failed"}), ("b", {"status": "completed"})))
        assert [d.id for d in result] == ["a"]

    def test_order_and_limit(self):
        """Descending order then limit."""
        query = Query("c").ordered("date", descending=True).limited(2)
        result = query.apply(docs(
            ("a", {"date": "2024-05-01"}),
            ("b", {"date": "2024-05-03"}),
            ("c", {"date": "2024-05-02"}),
        ))
        assert [d.id for d in result] == ["b", "c"]

    def test_ties_follow_document_id(self):
        query = Query("c").ordered("date", descending=True)
        result = query.apply(docs(
            ("b", {"date": "2024-05-01"}),
            ("c", {"date": "2024-05-02"}),
            ("a", {"date": "2024-05-01"}),
        ))
        assert [d.id for d in result] == ["c", "b", "a"]

    def test_start_after_resumes_behind_the_cursor(self):
        query = Query("c").ordered("date", descending=True).start_after("2024-05-01", "b")
        result = query.apply(docs(
            ("a", {"date": "2024-05-01"}),
            ("b", {"date": "2024-05-01"}),
            ("c", {"date": "2024-05-02"}),
            ("d", {"date": "2024-04-30"}),
        ))
        assert [d.id for d in result] == ["a", "d"]

    def test_start_after_needs_an_order(self):
        with pytest.raises(ValueError):
            Query("c").start_after("2024-05-01", "a")

    def test_builders_do_not_mutate(self):
        base = Query("c")
        base.where("x", "==", 1)
        assert base.filters == ()


class TestWriteBatch:
    """Tests for batch application."""

    def test_set_update_delete(self):
        image = {"c": {"a": {"n": 1}, "b": {"n": 2}}}
        batch = WriteBatch().set("c", "x", {"n": 9}).update("c", "a", {"flag": True}).delete("c", "b")

        batch.apply_to(image)

        assert image["c"] == {"a": {"n": 1, "flag": True}, "x": {"n": 9}}

    def test_update_of_missing_document_fails(self):
        with pytest.raises(NotFoundError):
            WriteBatch().update("c", "ghost", {"n": 1}).apply_to({})

    def test_money_increments_stay_exact(self):
        """String money increments are summed as Decimal."""
        image = {"accounts": {"a": {"balance": "100.10"}}}
        WriteBatch().increment("accounts", "a", "balance", "-0.20").apply_to(image)
        assert image["accounts"]["a"]["balance"] == "99.90"

    def test_add_increment(self):
        assert add_increment(None, 3) == 3
        assert add_increment(2, 3) == 5
        assert add_increment("1.50", Decimal("2.25")) == "3.75"


class TestInMemoryDocumentStore:
    """Tests for commits, dedup and failure injection."""

    @pytest.mark.asyncio
    async def test_commit_and_read(self):
        store = InMemoryDocumentStore()
        assert await store.commit(WriteBatch().set("c", "a", {"n": 1}))

        doc = await store.get("c", "a")
        assert doc.data == {"n": 1}
        assert await store.get("c", "missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_commit_id_is_skipped(self):
        """Replaying a landed batch does not apply its increments twice."""
        store = InMemoryDocumentStore()
        store.load("accounts", {"a": {"balance": "10.00"}})
        batch = WriteBatch().increment("accounts", "a", "balance", "5")

        assert await store.commit(batch) is True
        assert await store.commit(batch) is False

        assert (await store.get("accounts", "a")).data["balance"] == "15.00"

    @pytest.mark.asyncio
    async def test_failed_commit_writes_nothing(self):
        store = InMemoryDocumentStore()
        store.fail_next_commits(1)

        with pytest.raises(TransientRemoteError):
            await store.commit(WriteBatch().set("c", "a", {"n": 1}))

        assert await store.get("c", "a") is None
        assert await store.commit(WriteBatch().set("c", "a", {"n": 1}))

    @pytest.mark.asyncio
    async def test_partial_batch_is_not_applied(self):
        """A failing op leaves earlier ops of the batch unapplied."""
        store = InMemoryDocumentStore()
        batch = WriteBatch().set("c", "a", {"n": 1}).update("c", "ghost", {"n": 2})

        with pytest.raises(NotFoundError):
            await store.commit(batch)

        assert await store.get("c", "a") is None

    @pytest.mark.asyncio
    async def test_offline_store_rejects_commits(self):
        store = InMemoryDocumentStore()
        store.set_online(False)

        with pytest.raises(TransientRemoteError):
            await store.commit(WriteBatch().set("c", "a", {"n": 1}))
        assert not store.is_online

    @pytest.mark.asyncio
    async def test_empty_batch_is_a_no_op(self):
        store = InMemoryDocumentStore()
        assert await store.commit(WriteBatch()) is False
        assert store.commit_attempts == 0


    @pytest.mark.asyncio
    async def test_back_online_runs_listeners(self):
        """Listeners run on the offline to online transition only."""
        store = InMemoryDocumentStore()
        calls = []

        async def listener():
            calls.append(store.is_online)

        remove = store.on_online(listener)
        store.set_online(True)
        await asyncio.sleep(0)
        assert calls == []

        store.set_online(False)
        store.set_online(True)
        await asyncio.sleep(0)
        assert calls == [True]

        remove()
        store.set_online(False)
        store.set_online(True)
        await asyncio.sleep(0)
        assert calls == [True]

    @pytest.mark.asyncio
    async def test_failing_online_listener_is_contained(self):
        store = InMemoryDocumentStore()
        calls = []

        async def broken():
            raise RuntimeError("boom")

        async def listener():
            calls.append("ran")

        store.on_online(broken)
        store.on_online(listener)
        store.set_online(False)
        store.set_online(True)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert calls == ["ran"]
        assert store.is_online


class TestSubscriptions:
    """Tests for live snapshots."""

    @pytest.mark.asyncio
    async def test_pending_then_confirmed(self):
        """Subscribers see the overlaid batch first, then the confirmed state."""
        store = InMemoryDocumentStore()
        subscription = await store.subscribe(Query("c"))
        initial = await subscription.next()

        await store.commit(WriteBatch().set("c", "a", {"n": 1}))
        pending = await subscription.next()
        confirmed = await subscription.next()

        assert initial.documents == []
        assert pending.has_pending_writes
        assert [d.id for d in pending.documents] == ["a"]
        assert not confirmed.has_pending_writes
        assert [d.id for d in confirmed.documents] == ["a"]

    @pytest.mark.asyncio
    async def test_failed_commit_reverts_snapshot(self):
        store = InMemoryDocumentStore()
        subscription = await store.subscribe(Query("c"))
        await subscription.next()
        store.fail_next_commits(1)

        with pytest.raises(TransientRemoteError):
            await store.commit(WriteBatch().set("c", "a", {"n": 1}))
        pending = await subscription.next()
        reverted = await subscription.next()

        assert [d.id for d in pending.documents] == ["a"]
        assert reverted.documents == []
        assert not reverted.has_pending_writes

    @pytest.mark.asyncio
    async def test_overlay_only_uses_own_collection(self):
        """A batch touching other collections still overlays this one."""
        store = InMemoryDocumentStore()
        subscription = await store.subscribe(Query("transactions"))
        await subscription.next()
        store.load("accounts", {"a": {"balance": "0"}})
        batch = (
            WriteBatch()
            .set("transactions", "t1", {"amount": "-5.00"})
            .increment("accounts", "a", "balance", "-5.00")
        )

        await store.commit(batch)
        pending = await subscription.next()

        assert pending.has_pending_writes
        assert [d.id for d in pending.documents] == ["t1"]

    @pytest.mark.asyncio
    async def test_unrelated_collections_are_not_notified(self):
        store = InMemoryDocumentStore()
        subscription = await store.subscribe(Query("categories"))
        await subscription.next()

        await store.commit(WriteBatch().set("accounts", "a", {"balance": "0"}))

        assert subscription.latest.documents == []
        assert subscription._queue.empty()

    @pytest.mark.asyncio
    async def test_unsubscribe_ends_iteration(self):
        store = InMemoryDocumentStore()
        subscription = await store.subscribe(Query("c"))
        subscription.unsubscribe()

        received = [s async for s in subscription]

        assert len(received) == 1
        assert subscription.closed


class TestBudgetRepository:
    """Tests for model/document conversion and typed reads."""

    def test_documents_exclude_id_and_pending(self):
        txn = Transaction(date=date(2024, 5, 2), amount="-12.5", account_id="a1", is_pending=True)
        document = to_document(txn)

        assert "id" not in document
        assert "is_pending" not in document
        assert document["amount"] == "-12.50"
        assert document["date"] == "2024-05-02"

    def test_malformed_documents_are_skipped(self):
        assert from_document(Account, Document("a1", {"name": ""})) is None

    def test_allocation_ignores_stored_id(self):
        allocation = from_document(
            MonthlyAllocation,
            Document("2024-05_c1", {"month": "2024-05", "category_id": "c1", "budgeted": "10"}),
        )
        assert allocation.id == "2024-05_c1"

    @pytest.mark.asyncio
    async def test_month_query(self):
        """Month queries are half-open date ranges, newest first."""
        store = InMemoryDocumentStore()
        repo = BudgetRepository(store, "u1")
        batch = WriteBatch()
        for day in (date(2024, 4, 30), date(2024, 5, 1), date(2024, 5, 31), date(2024, 6, 1)):
            repo.put_transaction(batch, Transaction(date=day, amount="-1", account_id="a1"))
        await store.commit(batch)

        may = await repo.list_transactions("2024-05")

        assert [t.date for t in may] == [date(2024, 5, 31), date(2024, 5, 1)]
        assert len(await repo.list_transactions()) == 4

    @pytest.mark.asyncio
    async def test_transaction_pages(self):
        """Pages run newest first and resume behind the previous page."""
        store = InMemoryDocumentStore()
        repo = BudgetRepository(store, "u1")
        batch = WriteBatch()
        for day in range(1, 6):
            repo.put_transaction(batch, Transaction(date=date(2024, 5, day), amount="-1", account_id="a1"))
        repo.put_transaction(batch, Transaction(date=date(2024, 6, 1), amount="-1", account_id="a1"))
        await store.commit(batch)

        first = await repo.list_transactions_page("2024-05", page_size=2)
        second = await repo.list_transactions_page("2024-05", page_size=2, after=first.last)
        third = await repo.list_transactions_page("2024-05", page_size=2, after=second.last)

        assert [t.date.day for t in first.transactions] == [5, 4]
        assert [t.date.day for t in second.transactions] == [3, 2]
        assert [t.date.day for t in third.transactions] == [1]
        assert first.has_more and second.has_more
        assert not third.has_more

    @pytest.mark.asyncio
    async def test_transaction_pages_for_one_account(self):
        store = InMemoryDocumentStore()
        repo = BudgetRepository(store, "u1")
        same_day = date(2024, 5, 3)
        batch = WriteBatch()
        for account_id in ("a1", "a2", "a1", "a1"):
            repo.put_transaction(batch, Transaction(date=same_day, amount="-1", account_id=account_id))
        await store.commit(batch)

        first = await repo.list_transactions_page("2024-05", account_id="a1", page_size=2)
        rest = await repo.list_transactions_page("2024-05", account_id="a1", page_size=2, after=first.last)
        ids = [t.id for t in first.transactions + rest.transactions]

        assert len(ids) == 3 == len(set(ids))
        assert all(t.account_id == "a1" for t in first.transactions + rest.transactions)
        assert first.has_more and not rest.has_more

    @pytest.mark.asyncio
    async def test_empty_month_has_no_pages(self):
        repo = BudgetRepository(InMemoryDocumentStore(), "u1")

        page = await repo.list_transactions_page("2024-05")

        assert page.transactions == []
        assert page.last is None
        assert not page.has_more

    @pytest.mark.asyncio
    async def test_increment_balance(self):
        store = InMemoryDocumentStore()
        repo = BudgetRepository(store, "u1")
        account = Account(name="Checking", balance="100")
        await store.commit(repo.put_account(WriteBatch(), account))

        await store.commit(repo.increment_balance(WriteBatch(), account.id, Decimal("-40.25")))

        assert (await repo.get_account(account.id)).balance == Decimal("59.75")

    @pytest.mark.asyncio
    async def test_pending_snapshot_flags_transactions(self):
        store = InMemoryDocumentStore()
        repo = BudgetRepository(store, "u1")
        subscription = await store.subscribe(repo.transactions_query())
        await subscription.next()

        await store.commit(repo.put_transaction(
            WriteBatch(), Transaction(date=date(2024, 5, 1), amount="-1", account_id="a1")
        ))
        pending = transactions_from_snapshot(await subscription.next())
        confirmed = transactions_from_snapshot(await subscription.next())

        assert pending[0].is_pending
        assert not confirmed[0].is_pending


class TestImageCaches:
    """Tests for the receipt image caches."""

    @pytest.mark.asyncio
    async def test_in_memory_cache(self):
        cache = InMemoryImageCache()
        size = await cache.put("t1", b"\x89PNG")

        assert size == len(encode_image(b"\x89PNG"))
        assert await cache.get("t1") == encode_image(b"\x89PNG")
        await cache.delete("t1")
        assert not await cache.exists("t1")
        with pytest.raises(NotFoundError):
            await cache.get("t1")

    @pytest.mark.asyncio
    async def test_file_cache_survives_new_instance(self, tmp_path):
        await FileImageCache(tmp_path).put("t1", "aGVsbG8=")

        reopened = FileImageCache(tmp_path)

        assert await reopened.get("t1") == "aGVsbG8="
        assert reopened.cached_ids() == ["t1"]
        await reopened.delete("t1")
        await reopened.delete("t1")
        assert reopened.cached_ids() == []

    @pytest.mark.asyncio
    async def test_file_cache_rejects_path_keys(self, tmp_path):
        with pytest.raises(ValueError):
            await FileImageCache(tmp_path).put("../escape", b"x")
