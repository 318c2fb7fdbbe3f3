"""
Reverse Embed Propagator Tests

Covers:
  - Sync refresh of separate, array, and in-place snapshots
  - Watch gate (watched fields, dotted parents, empty watch list)
  - Array updates touch only the matching element
  - Relations without reverse keep their historical snapshot
  - Only the directly embedding collection is refreshed
  - Exact update shapes sent to the store
  - Sync failures raise PropagationError; sessions are passed through
"""

import pytest
from bson import ObjectId

from docrel.kernel.errors import PropagationError
from docrel.models import embed
from docrel.services.reverse_embed import dependent_filter, watch_gate


async def _post(db, seeded, **extra):
    data = {"title": "Hello", "author_id": seeded["author"]["_id"], **extra}
    return await db.posts.create(data)


# ============================================================================
# Separate
# ============================================================================


class TestSeparate:
    @pytest.mark.asyncio
    async def test_sync_update_refreshes_every_dependent(self, db, store, seeded):
        p1 = await _post(db, seeded)
        p2 = await _post(db, seeded, title="Second")
        aid = seeded["author"]["_id"]

        await db.authors.update_by_id(aid, {"name": "Ada L."})

        for post_id in (p1["_id"], p2["_id"]):
            stored = await store.find_one("posts", {"_id": post_id})
            assert stored["author"] == {"_id": str(aid), "name": "Ada L.", "avatar": "ada.png"}

    @pytest.mark.asyncio
    async def test_update_shape(self, db, store, seeded):
        await _post(db, seeded)
        aid = seeded["author"]["_id"]
        store.updates.clear()

        await db.authors.update_by_id(aid, {"avatar": "new.png"})

        (call,) = [u for u in store.updates if u["collection"] == "posts"]
        assert call["filter"] == {"author._id": str(aid)}
        assert call["update"] == {"$set": {"author": {"_id": str(aid), "name": "Ada", "avatar": "new.png"}}}
        assert call["array_filters"] is None

    @pytest.mark.asyncio
    async def test_unwatched_field_does_not_propagate(self, db, store, seeded):
        post = await _post(db, seeded)
        aid = seeded["author"]["_id"]
        await store.update_many("posts", {}, {"$set": {"author.name": "STALE"}})
        store.updates.clear()

        await db.authors.update_by_id(aid, {"post_count": 1})
        assert store.updates == []
        assert (await store.find_one("posts", {"_id": post["_id"]}))["author"]["name"] == "STALE"

        await db.authors.update_by_id(aid, {"name": "Ada"})
        assert (await store.find_one("posts", {"_id": post["_id"]}))["author"]["name"] == "Ada"

    @pytest.mark.asyncio
    async def test_documents_embedding_other_sources_untouched(self, db, store, seeded):
        bob = await db.authors.create({"_id": ObjectId(), "name": "Bob", "avatar": "bob.png"})
        bobs = await db.posts.create({"title": "Bob's", "author_id": bob["_id"]})

        await db.authors.update_by_id(seeded["author"]["_id"], {"name": "Ada L."})
        assert (await store.find_one("posts", {"_id": bobs["_id"]}))["author"]["name"] == "Bob"


# ============================================================================
# Array
# ============================================================================


class TestArray:
    @pytest.mark.asyncio
    async def test_only_matching_element_changes(self, db, store, seeded):
        t1, t2 = seeded["tags"]
        post = await _post(db, seeded, tag_ids=[t1["_id"], t2["_id"]])
        before = post["tags"][1]

        await db.tags.update_by_id(t1["_id"], {"color": "red"})

        stored = await store.find_one("posts", {"_id": post["_id"]})
        assert stored["tags"][0] == {"_id": str(t1["_id"]), "name": "python", "color": "red"}
        assert stored["tags"][1] == before

    @pytest.mark.asyncio
    async def test_update_shape(self, db, store, seeded):
        t1, _ = seeded["tags"]
        await _post(db, seeded, tag_ids=[t1["_id"]])
        sid = str(t1["_id"])
        store.updates.clear()

        await db.tags.update_by_id(t1["_id"], {"name": "py"})

        (call,) = [u for u in store.updates if u["collection"] == "posts"]
        assert call["filter"] == {"tags._id": sid}
        assert call["update"] == {"$set": {"tags.$[elem]": {"_id": sid, "name": "py", "color": "blue"}}}
        assert call["array_filters"] == [{"elem._id": sid}]

    @pytest.mark.asyncio
    async def test_relation_without_reverse_is_not_refreshed(self, db, store, seeded):
        t1, _ = seeded["tags"]
        post = await _post(db, seeded, tag_ids=[t1["_id"]], tag_slug="python")

        await db.tags.update_by_id(t1["_id"], {"name": "py"})

        stored = await store.find_one("posts", {"_id": post["_id"]})
        assert stored["tags"][0]["name"] == "py"
        assert stored["primary_tag"] == {"_id": "python", "name": "python"}


# ============================================================================
# In-place
# ============================================================================


class TestInPlace:
    @pytest.mark.asyncio
    async def test_fields_merged_siblings_kept(self, db, store, seeded):
        directory = seeded["directory"]
        file = await db.files.create({"name": "a.md", "directory": {"_id": directory["_id"], "pinned": True}})

        await db.directories.update_by_id(directory["_id"], {"name": "Documents", "path": "/documents"})

        stored = await store.find_one("files", {"_id": file["_id"]})
        assert stored["directory"] == {
            "_id": directory["_id"],
            "pinned": True,
            "name": "Documents",
            "path": "/documents",
        }

    @pytest.mark.asyncio
    async def test_update_shape(self, db, store, seeded):
        directory = seeded["directory"]
        await db.files.create({"name": "a.md", "directory": {"_id": directory["_id"]}})
        store.updates.clear()

        await db.directories.update_by_id(directory["_id"], {"name": "Documents"})

        (call,) = [u for u in store.updates if u["collection"] == "files"]
        assert call["filter"] == {
            "$or": [{"directory._id": str(directory["_id"])}, {"directory._id": directory["_id"]}]
        }
        assert call["update"] == {"$set": {"directory.name": "Documents", "directory.path": "/docs"}}


# ============================================================================
# Scope
# ============================================================================


class TestScope:
    @pytest.mark.asyncio
    async def test_historical_snapshot_is_kept(self, db, store, seeded):
        product = seeded["product"]
        order = await db.orders.create({"product_id": product["_id"], "qty": 2})

        await db.products.update_by_id(product["_id"], {"price": 55})

        stored = await store.find_one("orders", {"_id": order["_id"]})
        assert stored["product"]["price"] == 40

    @pytest.mark.asyncio
    async def test_second_level_dependents_are_not_refreshed(self, db, store, seeded):
        post = await _post(db, seeded)
        feed = await db.feeds.create({"post_id": post["_id"]})
        assert feed["post"]["author"]["name"] == "Ada"

        await db.authors.update_by_id(seeded["author"]["_id"], {"name": "Ada L."})
        stored = await store.find_one("feeds", {"_id": feed["_id"]})
        assert stored["post"]["author"]["name"] == "Ada"

        # Updating the post itself carries its current author along.
        await db.posts.update_by_id(post["_id"], {"title": "Hello, world"})
        stored = await store.find_one("feeds", {"_id": feed["_id"]})
        assert stored["post"]["title"] == "Hello, world"
        assert stored["post"]["author"]["name"] == "Ada L."


# ============================================================================
# Failures and sessions
# ============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_sync_failure_raises_propagation_error(self, orm_factory, failing_store):
        store = failing_store("posts")
        db = orm_factory(store).with_context()
        author = await db.authors.create({"_id": ObjectId(), "name": "Ada", "avatar": "ada.png"})
        await db.posts.create({"title": "Hello", "author_id": author["_id"]})

        with pytest.raises(PropagationError) as exc:
            await db.authors.update_by_id(author["_id"], {"name": "Ada L."})

        assert exc.value.source == "authors"
        assert exc.value.dependent == "posts"
        assert exc.value.relation == "author"
        assert isinstance(exc.value.__cause__, RuntimeError)
        # The source write itself stands.
        assert (await store.find_one("authors", {"_id": author["_id"]}))["name"] == "Ada L."

    @pytest.mark.asyncio
    async def test_sync_update_carries_session(self, orm, store, seeded):
        await _post(orm.with_context(), seeded)
        store.updates.clear()

        async with orm.transaction(orm.context()) as tx:
            await orm.with_context(tx).authors.update_by_id(seeded["author"]["_id"], {"name": "Ada L."})

        (call,) = [u for u in store.updates if u["collection"] == "posts"]
        assert call["session"] is tx.session
        assert tx.session is not None


# ============================================================================
# Helpers
# ============================================================================


class TestWatchGate:
    def test_empty_watch_list_always_passes(self):
        assert watch_gate([], ["anything"])

    def test_unrelated_field_is_gated(self):
        assert not watch_gate(["name"], ["post_count"])
        assert not watch_gate(["name"], ["names"])

    def test_dotted_paths_match_parents_and_children(self):
        assert watch_gate(["profile"], ["profile.avatar"])
        assert watch_gate(["profile.avatar"], ["profile"])
        assert not watch_gate(["profile.avatar"], ["profile.bio"])


class TestDependentFilter:
    def test_snapshot_id_used_when_selected(self):
        relation = embed("authors", source_path="author_id", fields=["name"])
        assert dependent_filter(relation, "author", "a1") == {"author._id": "a1"}

    def test_reference_field_used_without_snapshot_id(self):
        oid = ObjectId()
        relation = embed("authors", source_path="author_id", fields={"_id": 0, "name": 1})
        assert dependent_filter(relation, "author", oid) == {"author_id": {"$in": [str(oid), oid]}}

    def test_in_place_matches_both_id_forms(self):
        oid = ObjectId()
        relation = embed("directories", source_path="directory._id", fields=["name"])
        assert dependent_filter(relation, "directory", oid) == {
            "$or": [{"directory._id": str(oid)}, {"directory._id": oid}]
        }
