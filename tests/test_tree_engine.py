"""Tests for the copy-on-write tree engine."""
import pytest

from snapsync.errors import InvalidPath, NotFound
from snapsync.filesystem.object_store import content_hash
from snapsync.filesystem.store import Store
from snapsync.filesystem.tree_engine import TreeEngine


async def listing(store: Store, tree: str) -> list[tuple[str, str]]:
    return [(entry.path, entry.hash) async for entry in store.trees.listing(tree)]


class TestInsert:
    async def test_insert_and_resolve(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/files/test.txt", content_hash(b"hello"), 5)

        node = await store.trees.resolve(tree, "/files/test.txt")
        assert node.is_file
        assert node.hash == content_hash(b"hello")
        assert node.size == 5
        assert (await store.trees.resolve(tree, "/files")).is_dir

    async def test_base_is_unchanged(self, store: Store) -> None:
        base = store.history.current().tree
        await store.trees.insert(base, "/a.txt", content_hash(b"a"), 1)

        with pytest.raises(NotFound):
            await store.trees.resolve(base, "/a.txt")
        assert await listing(store, base) == []

    async def test_unrelated_subtrees_are_shared(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/left/a.txt", content_hash(b"a"), 1)
        tree = await store.trees.insert(tree, "/right/b.txt", content_hash(b"b"), 1)
        updated = await store.trees.insert(tree, "/right/c.txt", content_hash(b"c"), 1)

        before = await store.trees.get_node(tree)
        after = await store.trees.get_node(updated)
        assert before.children["left"] == after.children["left"]
        assert before.children["right"] != after.children["right"]

    async def test_child_of_file_is_rejected(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/file", content_hash(b"x"), 1)

        with pytest.raises(InvalidPath):
            await store.trees.insert(tree, "/file/child", content_hash(b"y"), 1)

    async def test_directory_cannot_become_a_file(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/dir/file", content_hash(b"x"), 1)

        with pytest.raises(InvalidPath):
            await store.trees.insert(tree, "/dir", content_hash(b"y"), 1)

    @pytest.mark.parametrize("path", ["", "relative.txt", "/"])
    async def test_invalid_paths(self, store: Store, path: str) -> None:
        with pytest.raises(InvalidPath):
            await store.trees.insert(store.history.current().tree, path, content_hash(b"x"), 1)

    async def test_overwrite_file(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/a.txt", content_hash(b"one"), 3)
        tree = await store.trees.insert(tree, "/a.txt", content_hash(b"two"), 3)

        assert await listing(store, tree) == [("/a.txt", content_hash(b"two"))]


class TestDelete:
    async def test_delete_file(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/a.txt", content_hash(b"a"), 1)
        tree = await store.trees.insert(tree, "/b.txt", content_hash(b"b"), 1)
        deleted = await store.trees.delete(tree, "/a.txt")

        assert await listing(store, deleted) == [("/b.txt", content_hash(b"b"))]
        assert len(await listing(store, tree)) == 2

    async def test_delete_directory_subtree(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/dir/a.txt", content_hash(b"a"), 1)
        tree = await store.trees.insert(tree, "/dir/sub/b.txt", content_hash(b"b"), 1)
        tree = await store.trees.insert(tree, "/keep.txt", content_hash(b"k"), 1)
        deleted = await store.trees.delete(tree, "/dir")

        assert await listing(store, deleted) == [("/keep.txt", content_hash(b"k"))]

    async def test_delete_missing(self, store: Store) -> None:
        base = store.history.current().tree
        with pytest.raises(NotFound):
            await store.trees.delete(base, "/nope")

    async def test_delete_below_a_file(self, store: Store) -> None:
        base = store.history.current().tree
        tree = await store.trees.insert(base, "/file", content_hash(b"x"), 1)
        with pytest.raises(NotFound):
            await store.trees.delete(tree, "/file/child")

    async def test_delete_keeps_objects(self, store: Store) -> None:
        hash_value = await store.objects.put(b"data")
        tree = await store.trees.insert(store.history.current().tree, "/a", hash_value, 4)
        await store.trees.delete(tree, "/a")

        assert await store.objects.get(hash_value) == b"data"


class TestListing:
    async def test_depth_first_in_name_order(self, store: Store) -> None:
        tree = store.history.current().tree
        for path in ["/b/z.txt", "/a.txt", "/b/a.txt", "/c/d/e.txt", "/b/m/n.txt"]:
            tree = await store.trees.insert(tree, path, content_hash(path.encode()), 1)

        paths = [path for path, _ in await listing(store, tree)]
        assert paths == ["/a.txt", "/b/a.txt", "/b/m/n.txt", "/b/z.txt", "/c/d/e.txt"]

    async def test_restartable(self, store: Store) -> None:
        tree = await store.trees.insert(store.history.current().tree, "/a", content_hash(b"a"), 1)
        assert await listing(store, tree) == await listing(store, tree)

    async def test_children(self, store: Store) -> None:
        tree = store.history.current().tree
        tree = await store.trees.insert(tree, "/dir/b", content_hash(b"b"), 1)
        tree = await store.trees.insert(tree, "/dir/a", content_hash(b"a"), 1)

        assert await store.trees.children(tree, "/dir") == ["a", "b"]
        assert await store.trees.children(tree, "/") == ["dir"]


async def test_clear_produces_empty_root(store: Store) -> None:
    tree = await store.trees.insert(store.history.current().tree, "/a", content_hash(b"a"), 1)
    cleared = await store.trees.clear()

    assert await listing(store, cleared) == []
    assert len(await listing(store, tree)) == 1


async def test_node_cache_is_bounded(store: Store) -> None:
    trees = TreeEngine(store.db, cache_size=4)
    tree = await trees.empty_tree()
    for i in range(20):
        tree = await trees.insert(tree, f"/dir{i}/file.txt", content_hash(str(i).encode()), 1)

    assert len(trees.nodes) <= 4
    # Evicted nodes are read back from the database
    entries = [entry.path async for entry in trees.listing(tree)]
    assert len(entries) == 20
    assert len(trees.nodes) <= 4
