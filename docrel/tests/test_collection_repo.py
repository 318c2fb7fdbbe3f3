"""
Collection Repository Tests

Covers:
  - find_by_id by ObjectId, hex string, and public id
  - Public id generation
  - Sync and async hooks, policy guards, read_filter scoping
  - Reference validation rejects writes before anything is stored
  - include trees resolved through the aggregation pipeline
  - Bulk update_many / delete_many skip propagation and delete actions
  - Transactions hand a session to every call
  - BoundDatabase attribute and item access
  - soft_delete / restore
"""

from datetime import datetime

import pytest
from bson import ObjectId

from docrel.kernel.errors import InvalidReferenceError, PolicyDeniedError, RelationConfigError, UnknownCollectionError
from docrel.kernel.storage import MemorySession, MemoryStore
from docrel.models import CollectionDef, Hooks, Policies

# ============================================================================
# Lookups by id
# ============================================================================


class TestFindById:
    @pytest.mark.asyncio
    async def test_object_id_hex_and_public_id(self, db, seeded):
        post = await db.posts.create({"title": "Hello", "author_id": seeded["author"]["_id"]})

        assert (await db.posts.find_by_id(post["_id"]))["title"] == "Hello"
        assert (await db.posts.find_by_id(str(post["_id"])))["title"] == "Hello"
        assert (await db.posts.find_by_id(post["public_id"]))["title"] == "Hello"

    @pytest.mark.asyncio
    async def test_public_id_is_generated_with_prefix(self, db, seeded):
        post = await db.posts.create({"title": "Hello", "author_id": seeded["author"]["_id"]})
        assert post["public_id"].startswith("post_")

    @pytest.mark.asyncio
    async def test_explicit_public_id_is_kept(self, db, seeded):
        post = await db.posts.create({"title": "Hello", "author_id": seeded["author"]["_id"], "public_id": "post_x"})
        assert post["public_id"] == "post_x"

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, db):
        assert await db.posts.find_by_id(ObjectId()) is None
        assert await db.posts.update_by_id(ObjectId(), {"title": "x"}) is None
        assert await db.posts.delete_by_id(ObjectId()) is False


# ============================================================================
# References
# ============================================================================


class TestReferences:
    @pytest.mark.asyncio
    async def test_dangling_reference_rejected_before_write(self, db):
        missing = ObjectId()
        with pytest.raises(InvalidReferenceError) as exc:
            await db.posts.create({"title": "Hello", "author_id": missing})

        assert exc.value.local_field == "author_id"
        assert exc.value.target == "authors"
        assert await db.posts.count() == 0

    @pytest.mark.asyncio
    async def test_none_reference_allowed(self, db):
        post = await db.posts.create({"title": "Draft", "author_id": None})
        assert post["author_id"] is None
        assert "author" not in post

    @pytest.mark.asyncio
    async def test_update_is_validated(self, db, seeded):
        post = await db.posts.create({"title": "Hello", "author_id": seeded["author"]["_id"]})
        with pytest.raises(InvalidReferenceError):
            await db.posts.update_by_id(post["_id"], {"author_id": ObjectId()})
        assert (await db.posts.find_by_id(post["_id"]))["author_id"] == seeded["author"]["_id"]


# ============================================================================
# Includes
# ============================================================================


class TestInclude:
    @pytest.mark.asyncio
    async def test_lookups_and_reference_join(self, db, seeded):
        author = seeded["author"]
        post = await db.posts.create({"title": "Hello", "author_id": author["_id"]})
        await db.comments.create({"post_id": post["_id"], "n": 2, "body": "second"})
        await db.comments.create({"post_id": post["_id"], "n": 1, "body": "first"})

        found = await db.posts.find_by_id(post["_id"], include={"writer": True, "comments": True, "owner": True})

        assert found["writer"] == {"_id": author["_id"], "name": "Ada"}
        assert [c["body"] for c in found["comments"]] == ["first", "second"]
        assert found["owner"]["avatar"] == "ada.png"

    @pytest.mark.asyncio
    async def test_find_many_with_include(self, db, seeded):
        for title in ("b", "a"):
            await db.posts.create({"title": title, "author_id": seeded["author"]["_id"]})

        results = await db.posts.find_many(include="writer", sort={"title": 1})
        assert [(p["title"], p["writer"]["name"]) for p in results] == [("a", "Ada"), ("b", "Ada")]

    @pytest.mark.asyncio
    async def test_missing_target_leaves_field_absent(self, db):
        post = await db.posts.create({"title": "Draft", "author_id": None})
        found = await db.posts.find_by_id(post["_id"], include="writer")
        assert "writer" not in found


# ============================================================================
# Hooks and policies
# ============================================================================


@pytest.fixture
def events():
    return []


@pytest.fixture
def notes(events):
    async def after_insert(ctx, doc):
        events.append(("after_insert", doc["title"]))

    def before_update(ctx, old, update):
        return {**update, "edited": True}

    return CollectionDef(
        name="notes",
        hooks=Hooks(
            before_insert=lambda ctx, doc: {**doc, "tenant_id": ctx.tenant_id},
            after_insert=after_insert,
            before_update=before_update,
            after_update=lambda ctx, old, new: events.append(("after_update", old["title"], new["title"])),
            before_delete=lambda ctx, doc: events.append(("before_delete", doc["title"])),
            after_delete=lambda ctx, doc: events.append(("after_delete", doc["title"])),
        ),
        policies=Policies(
            read_filter=lambda ctx: {"tenant_id": ctx.tenant_id},
            can_insert=lambda ctx, doc: doc["title"] != "forbidden",
            can_update=lambda ctx, old, update: not old.get("locked"),
            can_delete=lambda ctx, doc: not doc.get("locked"),
        ),
    )


@pytest.fixture
def notes_orm(orm_factory, notes):
    return orm_factory(MemoryStore(), [notes])


class TestHooksAndPolicies:
    @pytest.mark.asyncio
    async def test_hooks_run_in_order(self, notes_orm, events):
        db = notes_orm.with_context(notes_orm.context(tenant_id="t1"))

        note = await db.notes.create({"title": "a"})
        assert note["tenant_id"] == "t1"

        updated = await db.notes.update_by_id(note["_id"], {"title": "b"})
        assert updated["edited"] is True

        assert await db.notes.delete_by_id(note["_id"]) is True
        assert events == [
            ("after_insert", "a"),
            ("after_update", "a", "b"),
            ("before_delete", "b"),
            ("after_delete", "b"),
        ]

    @pytest.mark.asyncio
    async def test_policy_guards(self, notes_orm):
        db = notes_orm.with_context(notes_orm.context(tenant_id="t1"))

        with pytest.raises(PolicyDeniedError) as exc:
            await db.notes.create({"title": "forbidden"})
        assert exc.value.operation == "insert"

        locked = await db.notes.create({"title": "locked", "locked": True})
        with pytest.raises(PolicyDeniedError):
            await db.notes.update_by_id(locked["_id"], {"title": "x"})
        with pytest.raises(PolicyDeniedError) as exc:
            await db.notes.delete_by_id(locked["_id"])
        assert exc.value.operation == "delete"
        assert await db.notes.count() == 1

    @pytest.mark.asyncio
    async def test_read_filter_scopes_every_read(self, notes_orm):
        t1 = notes_orm.with_context(notes_orm.context(tenant_id="t1"))
        t2 = notes_orm.with_context(notes_orm.context(tenant_id="t2"))
        mine = await t1.notes.create({"title": "mine"})
        theirs = await t2.notes.create({"title": "theirs"})

        assert [n["title"] for n in await t1.notes.find_many()] == ["mine"]
        assert await t1.notes.find_by_id(theirs["_id"]) is None
        assert await t1.notes.delete_by_id(theirs["_id"]) is False
        assert await t1.notes.count() == 1
        assert (await t1.notes.find_by_id(mine["_id"]))["title"] == "mine"


# ============================================================================
# Bulk paths
# ============================================================================


class TestBulk:
    @pytest.mark.asyncio
    async def test_update_many_does_not_propagate(self, db, store, seeded):
        post = await db.posts.create({"title": "Hello", "author_id": seeded["author"]["_id"]})

        modified = await db.authors.update_many({}, {"name": "Bulk"})

        assert modified == 1
        assert (await store.find_one("posts", {"_id": post["_id"]}))["author"]["name"] == "Ada"

    @pytest.mark.asyncio
    async def test_delete_many_returns_count(self, db, seeded):
        for title in ("a", "b"):
            await db.posts.create({"title": title, "author_id": seeded["author"]["_id"]})
        assert await db.posts.delete_many({"title": "a"}) == 1
        assert await db.posts.count() == 1


# ============================================================================
# Context and database
# ============================================================================


class TestContext:
    @pytest.mark.asyncio
    async def test_transaction_context_carries_session(self, orm):
        ctx = orm.context(user={"id": "u1"})
        async with orm.transaction(ctx) as tx:
            assert isinstance(tx.session, MemorySession)
            assert tx.session.active
            assert tx.user == {"id": "u1"}
            assert tx.request_id == ctx.request_id
        assert not tx.session.active
        assert ctx.session is None

    @pytest.mark.asyncio
    async def test_bound_database_access(self, db):
        assert db.posts.name == "posts"
        assert db["authors"].name == "authors"
        assert db.posts.ctx is db.ctx

    @pytest.mark.asyncio
    async def test_unknown_collection(self, db):
        with pytest.raises(AttributeError):
            _ = db.nope
        with pytest.raises(AttributeError):
            _ = db._private
        with pytest.raises(UnknownCollectionError):
            _ = db["nope"]

    @pytest.mark.asyncio
    async def test_raw_aggregate(self, db, seeded):
        await db.posts.create({"title": "Hello", "author_id": seeded["author"]["_id"]})
        assert await db.posts.aggregate([{"$count": "n"}]) == [{"n": 1}]


# ============================================================================
# Soft delete
# ============================================================================


class TestSoftDelete:
    @pytest.mark.asyncio
    async def test_soft_delete_and_restore(self, orm_factory):
        tasks = CollectionDef(name="tasks", soft_delete_field="deleted_at")
        db = orm_factory(MemoryStore(), [tasks]).with_context()
        task = await db.tasks.create({"title": "Task"})

        deleted = await db.tasks.soft_delete(task["_id"])
        assert isinstance(deleted["deleted_at"], datetime)
        assert await db.tasks.count() == 1

        restored = await db.tasks.restore(task["_id"])
        assert restored["deleted_at"] is None
        assert restored["title"] == "Task"

    @pytest.mark.asyncio
    async def test_not_configured(self, db):
        with pytest.raises(RelationConfigError):
            await db.authors.soft_delete(ObjectId())
