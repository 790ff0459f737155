"""Tests for process tree reconciliation."""

import pytest
from conftest import make_record

from proctree.tree import (
    ChangeKind,
    ChangeTarget,
    Collapsible,
    DebugScope,
    ProcessTree,
    format_label,
    is_debuggable,
)


def nested_family(*children):
    """Root 1 -> parent 5 -> children, so parent 5 is addressable on its own."""
    return make_record(1, "/sbin/launchd", [make_record(5, "/usr/bin/parent", list(children))])


class TestLabels:
    """Tests for label and debug flag helpers."""

    def test_full_label(self):
        assert format_label("bash", 2.5, 12.0) == "bash (2.5%, 12.00MB)"

    def test_whole_percent_load(self):
        assert format_label("gpu-process", 5, 12.0) == "gpu-process (5%, 12.00MB)"

    def test_label_without_load(self):
        assert format_label("bash", None, 12.0) == "bash (12.00MB)"

    def test_label_without_metrics(self):
        assert format_label("bash", None, None) == "bash"

    @pytest.mark.parametrize(
        "command,expected",
        [
            ("/usr/bin/app --inspect", True),
            ("/usr/bin/app --inspect-brk=9229 main.js", True),
            ("/usr/bin/app --debug=5858", True),
            ("node server.js", True),
            ("/usr/bin/app --inspector-ui", True),
            ("--inspect /usr/bin/app", False),
            ("/bin/bash", False),
        ],
    )
    def test_is_debuggable(self, command, expected):
        assert is_debuggable(command) is expected


class TestChangeTarget:
    def test_truthiness(self):
        assert not ChangeTarget.none()
        assert ChangeTarget.node(3)
        assert ChangeTarget.whole_tree()


class TestMerge:
    """Tests for merging snapshots into the tree."""

    def test_first_merge_is_whole_tree(self, family):
        tree = ProcessTree(1)
        new_nodes = []
        target = tree.merge(family, new_nodes)

        assert target == ChangeTarget.whole_tree()
        assert [n.pid for n in tree.children()] == [10, 11]
        assert [n.pid for n in new_nodes] == [10, 11]
        assert tree.root.label == "/usr/bin/launcher (1.00MB)"

    def test_repeated_snapshot_changes_nothing(self, family):
        tree = ProcessTree(1)
        tree.merge(family)
        new_nodes = []
        assert tree.merge(family, new_nodes) == ChangeTarget.none()
        assert new_nodes == []

    def test_surviving_pid_keeps_its_node(self, family):
        tree = ProcessTree(1)
        tree.merge(family)
        before = tree.find(10)

        family.children[0].mem_mb = 3.0
        tree.merge(family)

        assert tree.find(10) is before
        assert before.label == "node app.js (3.00MB)"

    def test_single_change_targets_only_that_node(self):
        grandchild = make_record(20, "/bin/sleep 60")
        tree = ProcessTree(1)
        tree.merge(
            nested_family(make_record(10, "/bin/sh", [grandchild]), make_record(11, "/bin/sh"))
        )

        grandchild.mem_mb = 9.0
        target = tree.merge(
            nested_family(make_record(10, "/bin/sh", [grandchild]), make_record(11, "/bin/sh"))
        )

        assert target == ChangeTarget.node(tree.find(20).node_id)

    def test_leaf_load_change_targets_only_that_leaf(self):
        def snapshot(load):
            return nested_family(
                make_record(10, "/bin/sh", [make_record(20, "/bin/sleep 60", load=load)]),
                make_record(11, "/bin/sh", load=0.0),
            )

        tree = ProcessTree(1)
        tree.merge(snapshot(0.0))

        target = tree.merge(snapshot(7.5))

        leaf = tree.find(20)
        assert target == ChangeTarget.node(leaf.node_id)
        assert leaf.label == "/bin/sleep 60 (7.5%, 1.00MB)"

    def test_changes_in_sibling_subtrees_target_common_ancestor(self):
        tree = ProcessTree(1)
        tree.merge(
            nested_family(
                make_record(10, "/bin/sh", [make_record(20, "/bin/sleep 60")]),
                make_record(11, "/bin/sh"),
            )
        )

        target = tree.merge(
            nested_family(
                make_record(10, "/bin/sh", [make_record(20, "/bin/sleep 60", mem_mb=5.0)]),
                make_record(11, "/bin/sh", mem_mb=5.0),
            )
        )

        assert target == ChangeTarget.node(tree.find(5).node_id)

    def test_own_change_covers_child_change(self):
        tree = ProcessTree(1)
        tree.merge(nested_family(make_record(10, "/bin/sh")))

        target = tree.merge(
            make_record(
                1,
                "/sbin/launchd",
                [
                    make_record(
                        5, "/usr/bin/parent", [make_record(10, "/bin/sh", mem_mb=2.0)], mem_mb=7.0
                    )
                ],
            )
        )

        assert target == ChangeTarget.node(tree.find(5).node_id)

    def test_root_change_is_whole_tree(self, family):
        tree = ProcessTree(1)
        tree.merge(family)
        family.mem_mb = 50.0
        assert tree.merge(family).kind is ChangeKind.TREE

    def test_load_is_sticky_between_load_passes(self):
        tree = ProcessTree(1)
        tree.merge(make_record(1, "/sbin/init", load=12.5))
        target = tree.merge(make_record(1, "/sbin/init", load=None))

        assert target == ChangeTarget.none()
        assert tree.root.load == 12.5
        assert tree.root.label == "/sbin/init (12.5%, 1.00MB)"

    def test_children_follow_snapshot_order(self):
        tree = ProcessTree(1)
        tree.merge(make_record(1, "/sbin/init", [make_record(11, "b"), make_record(10, "a")]))
        assert [n.pid for n in tree.children()] == [11, 10]

    def test_walk_is_preorder(self):
        tree = ProcessTree(1)
        tree.merge(
            nested_family(make_record(10, "/bin/sh", [make_record(20, "x")]), make_record(11, "y"))
        )
        assert [n.pid for n in tree.walk()] == [1, 5, 10, 20, 11]

    def test_parent_lookup(self, family):
        tree = ProcessTree(1)
        tree.merge(family)
        assert tree.parent(tree.find(10)) is tree.root
        assert tree.parent(tree.root) is None


class TestRemoval:
    """Tests for processes that leave the snapshot."""

    def test_removed_child_is_dropped(self):
        tree = ProcessTree(1)
        tree.merge(nested_family(make_record(10, "node app.js"), make_record(11, "/bin/bash")))
        dropped = tree.find(11)

        target = tree.merge(nested_family(make_record(10, "node app.js")))

        assert target == ChangeTarget.node(tree.find(5).node_id)
        assert [n.pid for n in tree.children(tree.find(5))] == [10]
        assert tree.find(11) is None
        assert tree.get(dropped.node_id) is None

    def test_dropping_a_subtree_removes_descendants(self):
        tree = ProcessTree(1)
        tree.merge(make_record(1, "init", [make_record(10, "sh", [make_record(20, "sleep")])]))
        grandchild = tree.find(20)

        tree.merge(make_record(1, "init"))

        assert tree.get(grandchild.node_id) is None
        assert len(tree) == 1

    def test_pid_reappearing_gets_a_new_node(self, family):
        tree = ProcessTree(1)
        tree.merge(family)
        old = tree.find(11)

        tree.merge(make_record(1, "/usr/bin/launcher", [make_record(10, "node app.js")]))
        tree.merge(family)

        assert tree.find(11) is not old


class TestRetention:
    """Tests for keep_terminated mode."""

    def test_removed_child_becomes_terminated_ghost(self):
        tree = ProcessTree(1, keep_terminated=True)
        tree.merge(nested_family(make_record(10, "node app.js"), make_record(11, "/bin/bash")))
        ghost = tree.find(11)

        target = tree.merge(nested_family(make_record(10, "node app.js")))

        assert target == ChangeTarget.node(tree.find(5).node_id)
        assert ghost.terminated
        assert ghost.label == "[[ /bin/bash (1.00MB) ]]"
        assert ghost.debuggable is False
        assert tree.find(11) is None
        assert [n.pid for n in tree.children(tree.find(5))] == [10, 11]

    def test_ghost_is_stable_across_snapshots(self):
        tree = ProcessTree(1, keep_terminated=True)
        tree.merge(nested_family(make_record(10, "node app.js"), make_record(11, "/bin/bash")))
        tree.merge(nested_family(make_record(10, "node app.js")))
        ghost = tree.children(tree.find(5))[1]

        target = tree.merge(nested_family(make_record(10, "node app.js")))

        assert target == ChangeTarget.none()
        assert ghost.label.count("[[") == 1

    def test_ghost_descendants_are_terminated(self):
        tree = ProcessTree(1, keep_terminated=True)
        tree.merge(make_record(1, "init", [make_record(10, "sh", [make_record(20, "sleep")])]))
        grandchild = tree.find(20)

        tree.merge(make_record(1, "init"))

        assert grandchild.terminated
        assert grandchild.label.startswith("[[ ")

    def test_reused_pid_does_not_revive_ghost(self):
        tree = ProcessTree(1, keep_terminated=True)
        tree.merge(make_record(1, "init", [make_record(10, "old")]))
        tree.merge(make_record(1, "init"))
        ghost = tree.children()[0]

        new_nodes = []
        tree.merge(make_record(1, "init", [make_record(10, "new")]), new_nodes)

        live = tree.find(10)
        assert live is not ghost
        assert new_nodes == [live]
        assert [n.pid for n in tree.children()] == [10, 10]
        assert tree.children()[0] is live
        assert ghost.terminated


class TestDebugScope:
    """Tests for debug scope and collapsible state."""

    def test_parent_of_debuggable_child(self):
        tree = ProcessTree(1)
        tree.merge(nested_family(make_record(10, "node app.js"), make_record(11, "/bin/bash")))
        parent = tree.find(5)

        assert parent.debug_scope is DebugScope.CHILDREN
        assert parent.debug_scope.value == "subs"
        assert tree.find(10).debug_scope is DebugScope.SELF
        assert tree.find(11).debug_scope is DebugScope.NONE

    def test_both_scopes(self):
        tree = ProcessTree(1)
        tree.merge(make_record(1, "node --inspect main.js", [make_record(10, "node worker.js")]))
        assert tree.root.debug_scope is DebugScope.BOTH
        assert tree.root.debug_scope.value == "node-subs"

    def test_scope_recomputed_when_debuggable_child_leaves(self):
        tree = ProcessTree(1)
        tree.merge(nested_family(make_record(10, "node app.js"), make_record(11, "/bin/bash")))

        tree.merge(nested_family(make_record(11, "/bin/bash")))

        assert tree.find(5).debug_scope is DebugScope.NONE

    def test_terminated_child_is_not_debuggable(self):
        tree = ProcessTree(1, keep_terminated=True)
        tree.merge(nested_family(make_record(10, "node app.js")))

        tree.merge(nested_family())

        assert tree.find(5).debug_scope is DebugScope.NONE

    def test_collapsible_tracks_children(self):
        tree = ProcessTree(1)
        tree.merge(nested_family(make_record(10, "node app.js")))
        assert tree.find(5).collapsible is Collapsible.EXPANDED
        assert tree.find(10).collapsible is Collapsible.NONE

        tree.merge(nested_family())
        assert tree.find(5).collapsible is Collapsible.NONE


def test_poll_sequence_with_retention():
    """Three polls: appear, one exits, nothing changes."""
    tree = ProcessTree(1, keep_terminated=True)
    first = nested_family(make_record(10, "node app.js"), make_record(11, "/bin/bash"))
    assert tree.merge(first) == ChangeTarget.whole_tree()
    parent = tree.find(5)

    second = nested_family(make_record(10, "node app.js"))
    assert tree.merge(second) == ChangeTarget.node(parent.node_id)
    assert [c.label for c in tree.children(parent)] == [
        "node app.js (1.00MB)",
        "[[ /bin/bash (1.00MB) ]]",
    ]
    assert parent.debug_scope is DebugScope.CHILDREN

    assert tree.merge(nested_family(make_record(10, "node app.js"))) == ChangeTarget.none()
