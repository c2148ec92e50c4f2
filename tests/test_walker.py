"""Tests for local directory traversal."""

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from guestcopy.cp.walker import VisitedSet, walk
from guestcopy.errors import LocalIOError


def rel_paths(root, follow_links=False):
    return [entry.rel_path for entry in walk(str(root), follow_links)]


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "src"
    (root / "b_dir" / "nested").mkdir(parents=True)
    (root / "a.txt").write_text("a")
    (root / "b_dir" / "inner.txt").write_text("inner")
    (root / "b_dir" / "nested" / "deep.txt").write_text("deep")
    (root / "c.txt").write_text("c")
    return root


class TestWalkOrder:
    def test_parents_before_children_in_name_order(self, tree):
        assert rel_paths(tree) == [
            "a.txt",
            "b_dir",
            "b_dir/inner.txt",
            "b_dir/nested",
            "b_dir/nested/deep.txt",
            "c.txt",
        ]

    def test_entry_fields(self, tree):
        os.chmod(tree / "a.txt", 0o640)
        entries = {e.rel_path: e for e in walk(str(tree))}
        assert entries["a.txt"].mode == 0o640
        assert entries["a.txt"].is_dir is False
        assert entries["b_dir"].is_dir is True
        assert entries["b_dir"].path == os.path.join(str(tree), "b_dir")

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(LocalIOError):
            list(walk(str(tmp_path / "missing")))


class TestSymlinks:
    """Tests for symlink handling with and without following."""

    def test_links_are_leaves_without_follow(self, tree, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "x.txt").write_text("x")
        os.symlink(outside, tree / "link_dir")

        entries = {e.rel_path: e for e in walk(str(tree))}
        link = entries["link_dir"]
        assert link.is_symlink is True
        assert link.is_dir is False
        assert link.mode == 0  # Auto-detect from the target
        assert "link_dir/x.txt" not in entries

    def test_follow_descends_into_linked_dir(self, tree, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "x.txt").write_text("x")
        os.symlink(outside, tree / "link_dir")

        entries = {e.rel_path: e for e in walk(str(tree), follow_links=True)}
        assert entries["link_dir"].is_dir is True
        assert entries["link_dir"].is_symlink is True
        assert "link_dir/x.txt" in entries

    def test_cycle_to_ancestor_terminates(self, tree):
        """A link back to the root is skipped instead of recursing forever."""
        os.symlink(tree, tree / "b_dir" / "loop")

        paths = rel_paths(tree, follow_links=True)
        assert "b_dir/loop" not in paths
        assert len(paths) == len(set(paths))
        assert paths == [
            "a.txt",
            "b_dir",
            "b_dir/inner.txt",
            "b_dir/nested",
            "b_dir/nested/deep.txt",
            "c.txt",
        ]

    def test_cycle_to_ancestor_below_root_terminates(self, tmp_path):
        """A link back to an intermediate directory does not repeat its subtree."""
        root = tmp_path / "src"
        (root / "a" / "b").mkdir(parents=True)
        (root / "a" / "f.txt").write_text("f")
        os.symlink(root / "a", root / "a" / "b" / "loop")

        paths = rel_paths(root, follow_links=True)
        assert paths == ["a", "a/b", "a/f.txt"]

    def test_link_to_walked_sibling_is_skipped(self, tree):
        os.symlink(tree / "b_dir", tree / "z_link")
        paths = rel_paths(tree, follow_links=True)
        assert "z_link" not in paths
        assert paths.count("b_dir/inner.txt") == 1

    def test_same_target_linked_twice_is_walked_once(self, tree, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "x.txt").write_text("x")
        os.symlink(outside, tree / "l1")
        os.symlink(outside, tree / "l2")

        paths = rel_paths(tree, follow_links=True)
        assert "l1/x.txt" in paths
        assert "l2" not in paths
        assert "l2/x.txt" not in paths

    def test_broken_link_skipped_when_following(self, tree):
        os.symlink(tree / "nowhere", tree / "broken")
        assert "broken" not in rel_paths(tree, follow_links=True)

    def test_broken_link_kept_as_leaf_without_follow(self, tree):
        os.symlink(tree / "nowhere", tree / "broken")
        assert "broken" in rel_paths(tree, follow_links=False)

    def test_file_link_not_cycle_checked(self, tree):
        os.symlink(tree / "a.txt", tree / "a_link")
        os.symlink(tree / "a.txt", tree / "a_link2")
        paths = rel_paths(tree, follow_links=True)
        assert "a_link" in paths
        assert "a_link2" in paths


class TestVisitedSet:
    def test_membership_uses_canonical_paths(self, tmp_path):
        target = tmp_path / "target"
        target.mkdir()
        os.symlink(target, tmp_path / "alias")

        visited = VisitedSet()
        visited.add(str(target))
        assert str(tmp_path / "alias") in visited
        assert str(tmp_path / "target" / ".." / "target") in visited
        assert len(visited) == 1

    def test_fresh_set_per_walk(self, tree):
        visited = VisitedSet()
        list(walk(str(tree), follow_links=True, visited=visited))
        assert str(tree) in visited
