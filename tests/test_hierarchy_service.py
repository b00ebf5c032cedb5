"""Tests for the tree engine: mutations, queries, transactions and events."""

import logging

import pytest
from sqlalchemy.exc import OperationalError

from database import Database
from errors import (
    CycleDetected,
    DuplicateSibling,
    IllegalChildType,
    NotFound,
    SubtreeNotEmpty,
    TransientStorageError,
    TreeError,
)
from models import TreeClosure, TreeNode, TreePath
from services import DeletePolicy, HierarchyService, IndexStrategy, IntegrityService
from services.events import (
    CHILDREN_REORDERED,
    NODE_ATTACHED,
    NODE_MOVED,
    NODE_RENAMED,
    SUBTREE_DELETED,
)
from utils import ChildTypeRules, RetryPolicy


def ids(nodes):
    return [node.id for node in nodes]


# --- Scenarios ---


class TestCurriculumScenarios:
    def test_attach_root(self, curriculum):
        root = curriculum.attach(None, "Root", "General", "GEN")
        assert root == 1
        assert curriculum.path_of(1) == "-1-"
        assert curriculum.depth(1) == 0

    def test_attach_stage(self, curriculum):
        curriculum.attach(None, "Root", "General", "GEN")
        stage = curriculum.attach(1, "Stage", "Elementary", "ELEM")
        assert stage == 2
        assert curriculum.path_of(2) == "-1-2-"
        assert ids(curriculum.ancestors(2, include_self=True)) == [1, 2]
        assert ids(curriculum.ancestors(2)) == [1]

    def test_stage_cannot_be_child_of_grade(self, curriculum):
        curriculum.attach(None, "Root", "General", "GEN")
        curriculum.attach(1, "Stage", "Elementary", "ELEM")
        grade = curriculum.attach(2, "Grade", "Grade 1", "GR1")
        assert grade == 3
        with pytest.raises(IllegalChildType) as exc:
            curriculum.attach(3, "Stage", "X", "X")
        assert exc.value.parent_type == "Grade"
        assert exc.value.child_type == "Stage"

    def test_move_under_own_descendant_is_cycle(self, curriculum):
        curriculum.attach(None, "Root", "General", "GEN")
        curriculum.attach(1, "Stage", "Elementary", "ELEM")
        curriculum.attach(2, "Grade", "Grade 1", "GR1")
        with pytest.raises(CycleDetected) as exc:
            curriculum.move(2, 3)
        assert exc.value.node_id == 2
        assert exc.value.new_parent_id == 3
        assert curriculum.get(2).parent_id == 1

    def test_move_under_self_is_cycle(self, curriculum):
        curriculum.attach(None, "Root", "General", "GEN")
        curriculum.attach(1, "Stage", "Elementary", "ELEM")
        with pytest.raises(CycleDetected):
            curriculum.move(2, 2)


class TestCategoryScenarios:
    def test_move_subtree_up(self, categories, chain):
        assert chain == [1, 2, 3, 4]
        categories.move(3, 1)
        if categories.strategy.uses_path:
            assert categories.path_of(4) == "-1-3-4-"
        assert ids(categories.ancestors(4, include_self=True)) == [1, 3, 4]
        assert not categories.is_ancestor(2, 4)
        assert categories.depth(4) == 2

    def test_delete_rejects_non_empty_then_cascades(self, categories, chain):
        with pytest.raises(SubtreeNotEmpty) as exc:
            categories.delete_subtree(2, DeletePolicy.REJECT_IF_NON_EMPTY)
        assert exc.value.descendant_count == 2
        assert categories.get(2).is_active

        assert categories.delete_subtree(2, DeletePolicy.CASCADE) == 3
        assert ids(categories.subtree(1)) == [1]
        for node_id in (2, 3, 4):
            with pytest.raises(NotFound):
                categories.get(node_id)


# --- Properties ---


class TestProperties:
    def test_paths_agree_with_parents(self, categories, chain):
        categories.move(3, 1)
        extra = categories.attach(3, "Topic", "T", "T")
        assert IntegrityService(categories.session, categories.tree, categories.strategy).check().is_valid
        if categories.strategy.uses_path:
            for node in list(categories.subtree(1)):
                if node.parent_id is not None:
                    parent_path = categories.path_of(node.parent_id)
                    assert categories.path_of(node.id) == f"{parent_path}{node.id}-"
        assert ids(categories.ancestors(extra)) == [1, 3]

    def test_closure_agrees_with_parent_chain(self, categories, chain):
        categories.move(4, 1)
        categories.move(2, 4)
        for node in list(categories.subtree(1)):
            expected, current = [], node
            while current is not None:
                expected.insert(0, current.id)
                current = categories.get(current.parent_id) if current.parent_id else None
            assert ids(categories.ancestors(node.id, include_self=True)) == expected

    def test_no_node_is_its_own_ancestor(self, categories, chain):
        for node_id in chain:
            assert not categories.is_ancestor(node_id, node_id)
            assert node_id not in ids(categories.ancestors(node_id))

    def test_rebuild_is_idempotent(self, session, categories, chain):
        if not categories.strategy.uses_path:
            pytest.skip("tree keeps no materialized paths")
        categories.paths.rebuild_subtree(1)
        first = categories.paths.entries_for_tree(categories.tree)
        categories.paths.rebuild_subtree(1)
        assert categories.paths.entries_for_tree(categories.tree) == first

    def test_attach_move_delete_leaves_no_rows(self, session, categories):
        root = categories.attach(None, "Category", "R", "R")
        a = categories.attach(root, "Category", "A", "A")
        b = categories.attach(root, "Category", "B", "B")
        categories.move(b, a)
        categories.delete_subtree(b, DeletePolicy.CASCADE)

        assert session.query(TreePath).filter(TreePath.node_id == b).count() == 0
        assert session.query(TreeClosure).filter(
            (TreeClosure.ancestor_id == b) | (TreeClosure.descendant_id == b)
        ).count() == 0
        # 节点记录本身保留（软删除）
        assert session.get(TreeNode, b).is_active is False


# --- Mutations ---


class TestAttach:
    def test_unknown_parent(self, curriculum):
        with pytest.raises(NotFound):
            curriculum.attach(42, "Stage", "X", "X")

    def test_illegal_root_type(self, curriculum):
        with pytest.raises(IllegalChildType) as exc:
            curriculum.attach(None, "Stage", "X", "X")
        assert exc.value.parent_type is None

    def test_duplicate_sibling(self, curriculum):
        root = curriculum.attach(None, "Root", "General", "GEN")
        curriculum.attach(root, "Stage", "Elementary", "ELEM")
        with pytest.raises(DuplicateSibling):
            curriculum.attach(root, "Stage", "Another", "ELEM")
        assert len(curriculum.children(root)) == 1

    def test_parent_from_other_tree(self, session, curriculum):
        bank = HierarchyService(
            session, "question_bank", curriculum.rules, IndexStrategy.PATH
        )
        root = curriculum.attach(None, "Root", "General", "GEN")
        with pytest.raises(NotFound):
            bank.attach(root, "Stage", "X", "X")

    def test_explicit_order_index_shifts_siblings(self, curriculum):
        root = curriculum.attach(None, "Root", "General", "GEN")
        a = curriculum.attach(root, "Stage", "A", "A")
        b = curriculum.attach(root, "Stage", "B", "B")
        c = curriculum.attach(root, "Stage", "C", "C", order_index=0)
        assert ids(curriculum.children(root)) == [c, a, b]
        assert [n.order_index for n in curriculum.children(root)] == [0, 1, 2]

    def test_attach_under_deleted_parent(self, categories, chain):
        categories.delete_subtree(4)
        with pytest.raises(NotFound):
            categories.attach(4, "Topic", "T", "T")

    def test_attach_is_logged(self, caplog, curriculum):
        with caplog.at_level(logging.INFO, logger="services.hierarchy_service"):
            root = curriculum.attach(None, "Root", "General", "GEN")
        assert f"[curriculum] 新建节点 {root} (Root GEN)，父节点 None" in caplog.text


class TestMove:
    def test_illegal_type_under_new_parent(self, curriculum):
        r1 = curriculum.attach(None, "Root", "R1", "R1")
        r2 = curriculum.attach(None, "Root", "R2", "R2")
        stage = curriculum.attach(r1, "Stage", "S", "S")
        grade = curriculum.attach(stage, "Grade", "G", "G")
        with pytest.raises(IllegalChildType):
            curriculum.move(grade, r2)
        assert curriculum.get(grade).parent_id == stage

    def test_move_stage_to_other_root(self, curriculum):
        r1 = curriculum.attach(None, "Root", "R1", "R1")
        r2 = curriculum.attach(None, "Root", "R2", "R2")
        stage = curriculum.attach(r1, "Stage", "S", "S")
        grade = curriculum.attach(stage, "Grade", "G", "G")
        curriculum.move(stage, r2)
        assert curriculum.path_of(grade) == f"-{r2}-{stage}-{grade}-"
        assert ids(curriculum.ancestors(grade)) == [r2, stage]
        assert curriculum.children(r1) == []

    def test_move_to_root_requires_root_type(self, curriculum):
        root = curriculum.attach(None, "Root", "R", "R")
        stage = curriculum.attach(root, "Stage", "S", "S")
        with pytest.raises(IllegalChildType):
            curriculum.move(stage, None)

    def test_move_to_root(self, categories, chain):
        categories.move(3, None)
        assert ids(categories.roots()) == [1, 3]
        assert ids(categories.ancestors(4)) == [3]
        assert categories.depth(3) == 0

    def test_duplicate_code_under_new_parent(self, categories):
        r1 = categories.attach(None, "Category", "R1", "R1")
        r2 = categories.attach(None, "Category", "R2", "R2")
        x1 = categories.attach(r1, "Category", "X", "X")
        categories.attach(r2, "Category", "X", "X")
        with pytest.raises(DuplicateSibling):
            categories.move(x1, r2)

    def test_unknown_ids(self, categories, chain):
        with pytest.raises(NotFound):
            categories.move(99, 1)
        with pytest.raises(NotFound):
            categories.move(2, 99)

    def test_move_to_current_parent_reorders(self, categories):
        root = categories.attach(None, "Category", "R", "R")
        a = categories.attach(root, "Category", "A", "A")
        b = categories.attach(root, "Category", "B", "B")
        c = categories.attach(root, "Category", "C", "C")
        categories.move(c, root, order_index=0)
        assert ids(categories.children(root)) == [c, a, b]


class TestDelete:
    def test_delete_leaf_with_default_policy(self, categories, chain):
        assert categories.delete_subtree(4) == 1
        assert categories.descendant_ids(1) == [2, 3]

    def test_delete_unknown(self, categories):
        with pytest.raises(NotFound):
            categories.delete_subtree(7, DeletePolicy.CASCADE)

    def test_delete_policy_by_value(self, categories, chain):
        assert categories.delete_subtree(3, 'cascade') == 2

    def test_code_reusable_after_delete(self, categories, chain):
        categories.delete_subtree(4)
        new_id = categories.attach(3, "Category", "C4 again", "C4")
        assert categories.descendant_ids(3) == [new_id]


class TestRenameAndReorder:
    def test_rename(self, categories, chain):
        node = categories.rename(2, name="Two", code="TWO")
        assert node.name == "Two"
        assert categories.get(2).code == "TWO"

    def test_rename_duplicate(self, categories):
        root = categories.attach(None, "Category", "R", "R")
        a = categories.attach(root, "Category", "A", "A")
        categories.attach(root, "Category", "B", "B")
        with pytest.raises(DuplicateSibling):
            categories.rename(a, code="B")
        assert categories.get(a).code == "A"

    def test_reorder_children(self, categories):
        root = categories.attach(None, "Category", "R", "R")
        a = categories.attach(root, "Category", "A", "A")
        b = categories.attach(root, "Category", "B", "B")
        c = categories.attach(root, "Category", "C", "C")
        categories.reorder_children(root, [b, c, a])
        assert ids(categories.children(root)) == [b, c, a]
        assert [n.order_index for n in categories.children(root)] == [0, 1, 2]

    def test_reorder_requires_exact_children(self, categories):
        root = categories.attach(None, "Category", "R", "R")
        a = categories.attach(root, "Category", "A", "A")
        b = categories.attach(root, "Category", "B", "B")
        with pytest.raises(ValueError):
            categories.reorder_children(root, [a])
        with pytest.raises(ValueError):
            categories.reorder_children(root, [a, b, b])

    def test_reorder_roots(self, categories):
        r1 = categories.attach(None, "Category", "R1", "R1")
        r2 = categories.attach(None, "Category", "R2", "R2")
        categories.reorder_children(None, [r2, r1])
        assert ids(categories.roots()) == [r2, r1]


# --- Queries ---


class TestQueries:
    def test_children_of_leaf(self, categories, chain):
        assert categories.children(4) == []

    def test_query_unknown_start(self, categories):
        for query in (categories.children, categories.ancestors, categories.subtree,
                      categories.descendant_ids, categories.depth, categories.get):
            with pytest.raises(NotFound):
                query(99)

    def test_subtree_includes_start(self, categories, chain):
        assert sorted(ids(categories.subtree(2))) == [2, 3, 4]
        assert ids(categories.subtree(4)) == [4]

    def test_subtree_is_single_pass(self, categories, chain):
        subtree = categories.subtree(1)
        assert len(list(subtree)) == 4
        assert list(subtree) == []

    def test_descendant_ids_max_depth(self, categories, chain):
        assert categories.descendant_ids(1, max_depth=2) == [2, 3]

    def test_nodes_at_depth(self, categories, chain):
        assert ids(categories.nodes_at_depth(0)) == [1]
        assert ids(categories.nodes_at_depth(3)) == [4]

    def test_search_and_type(self, categories, chain):
        categories.attach(4, "Topic", "Linear equations", "LIN")
        assert ids(categories.search("linear")) == [5]
        assert ids(categories.search("c")) == [1, 2, 3, 4]
        assert ids(categories.nodes_by_type("Topic")) == [5]

    def test_path_of_without_path_index(self, session):
        from utils import ChildTypeRules
        service = HierarchyService(session, "qb", ChildTypeRules(["A"], {}), IndexStrategy.CLOSURE)
        node_id = service.attach(None, "A", "A", "A")
        with pytest.raises(TreeError):
            service.path_of(node_id)

    def test_export_tree(self, curriculum):
        root = curriculum.attach(None, "Root", "General", "GEN", description="main")
        stage = curriculum.attach(root, "Stage", "Elementary", "ELEM")
        curriculum.attach(stage, "Grade", "Grade 1", "GR1")
        exported = curriculum.export_tree()
        assert exported["tree"] == "curriculum"
        [root_data] = exported["nodes"]
        assert root_data["code"] == "GEN"
        assert root_data["description"] == "main"
        assert root_data["children"][0]["children"][0] == {
            "name": "Grade 1",
            "code": "GR1",
            "type": "Grade",
            "description": None,
            "children": [],
        }
        assert curriculum.export_tree(stage)["nodes"][0]["code"] == "ELEM"

    def test_statistics(self, curriculum):
        root = curriculum.attach(None, "Root", "General", "GEN")
        s1 = curriculum.attach(root, "Stage", "S1", "S1")
        curriculum.attach(root, "Stage", "S2", "S2")
        curriculum.attach(s1, "Grade", "G1", "G1")
        stats = curriculum.statistics()
        assert stats.total_nodes == 4
        assert stats.root_nodes == 1
        assert stats.leaf_nodes == 2
        assert stats.max_depth == 2
        assert stats.average_depth == 1.0
        assert stats.average_children == 1.5

    def test_statistics_empty(self, curriculum):
        assert curriculum.statistics().total_nodes == 0


# --- Transactions, retry, events ---


class TestBatch:
    def test_batch_commits_together(self, session, categories, events):
        seen = []
        events.subscribe(NODE_ATTACHED, lambda e: seen.append(e.node_id))
        with categories.batch():
            root = categories.attach(None, "Category", "R", "R")
            categories.attach(root, "Category", "A", "A")
            assert seen == []
        assert seen == [1, 2]

    def test_failure_inside_batch_rolls_back_everything(self, session, categories, events):
        seen = []
        events.subscribe("*", seen.append)
        with pytest.raises(IllegalChildType):
            with categories.batch():
                categories.attach(None, "Category", "R", "R")
                categories.attach(None, "Topic", "T", "T")
        assert categories.roots() == []
        assert seen == []

    def test_caught_failure_still_rolls_back(self, session, categories):
        with pytest.raises(TreeError):
            with categories.batch():
                categories.attach(None, "Category", "R", "R")
                with pytest.raises(IllegalChildType):
                    categories.attach(None, "Topic", "T", "T")
        assert categories.roots() == []

    def test_failed_mutation_leaves_state(self, categories, chain):
        with pytest.raises(CycleDetected):
            categories.move(1, 4)
        assert categories.get(1).parent_id is None
        assert ids(categories.ancestors(4)) == [1, 2, 3]

    def test_interrupted_move_is_rolled_back(self, monkeypatch, session, categories, chain):
        def interrupt(*args, **kwargs):
            raise KeyboardInterrupt

        # 中断最后一步索引更新，此时节点和其他索引已经 flush
        if categories.strategy.uses_closure:
            monkeypatch.setattr(categories.closure, "on_move", interrupt)
        else:
            monkeypatch.setattr(categories.paths, "rebuild_subtree", interrupt)
        with pytest.raises(KeyboardInterrupt):
            categories.move(3, 1)
        monkeypatch.undo()

        categories.attach(1, "Category", "New", "NEW")
        assert categories.get(3).parent_id == 2
        assert ids(categories.ancestors(4)) == [1, 2, 3]
        assert IntegrityService(session, categories.tree, categories.strategy).check().is_valid


class TestRetry:
    def _flaky(self, monkeypatch, service, failures):
        original = service.nodes.set_parent
        calls = {"count": 0}

        def set_parent(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] <= failures:
                raise OperationalError("UPDATE tree_nodes", {}, Exception("Deadlock found"))
            return original(*args, **kwargs)

        monkeypatch.setattr(service.nodes, "set_parent", set_parent)
        return calls

    def test_move_retries_transient_conflict(self, monkeypatch, categories, chain):
        calls = self._flaky(monkeypatch, categories, failures=1)
        categories.move(3, 1)
        assert calls["count"] == 2
        assert ids(categories.ancestors(4)) == [1, 3]

    def test_move_gives_up_after_max_attempts(self, monkeypatch, categories, chain):
        calls = self._flaky(monkeypatch, categories, failures=10)
        with pytest.raises(TransientStorageError) as exc:
            categories.move(3, 1)
        assert exc.value.attempts == 3
        assert exc.value.operation == "move"
        assert calls["count"] == 3
        assert categories.get(3).parent_id == 2

    def test_validation_errors_are_not_retried(self, monkeypatch, categories, chain):
        calls = self._flaky(monkeypatch, categories, failures=10)
        with pytest.raises(CycleDetected):
            categories.move(1, 3)
        assert calls["count"] == 0


class TestEvents:
    def test_events_after_commit(self, categories, events, chain):
        received = []
        events.subscribe("*", received.append)
        categories.move(3, 1)
        categories.rename(2, name="Two")
        categories.delete_subtree(2)
        categories.reorder_children(1, [3])
        kinds = [e.kind for e in received]
        assert kinds == [NODE_MOVED, NODE_RENAMED, SUBTREE_DELETED, CHILDREN_REORDERED]
        assert received[0].data == {"old_parent_id": 2, "new_parent_id": 1}
        assert received[2].data["node_ids"] == [2]

    def test_failed_mutation_emits_nothing(self, categories, events, chain):
        received = []
        events.subscribe("*", received.append)
        with pytest.raises(CycleDetected):
            categories.move(2, 4)
        assert received == []

    def test_handler_error_does_not_undo_commit(self, categories, events):
        def broken(event):
            raise RuntimeError("subscriber down")

        received = []
        events.subscribe(NODE_ATTACHED, broken)
        events.subscribe(NODE_ATTACHED, received.append)
        root = categories.attach(None, "Category", "R", "R")
        assert categories.get(root).code == "R"
        assert len(received) == 1

    def test_unsubscribe(self, categories, events):
        received = []
        events.subscribe(NODE_ATTACHED, received.append)
        events.unsubscribe(NODE_ATTACHED, received.append)
        categories.attach(None, "Category", "R", "R")
        assert received == []


class TestConcurrentSessions:
    """两个会话交替修改同一棵树（文件型 SQLite，各自持有连接）"""

    RULES = ChildTypeRules(["Category"], {"Category": ["Category"]})

    @pytest.fixture
    def file_db(self, tmp_path):
        database = Database(f"sqlite:///{tmp_path / 'tree.db'}", echo=False)
        assert database.create_tables()
        yield database
        database.dispose()

    def _service(self, session, strategy):
        return HierarchyService(
            session, "question_bank", self.RULES, strategy,
            retry_policy=RetryPolicy(max_attempts=1, base_delay=0),
            sleep_func=lambda _delay: None,
        )

    @pytest.mark.parametrize("strategy", list(IndexStrategy), ids=lambda s: s.value)
    def test_moves_after_ancestor_moved_elsewhere(self, file_db, strategy):
        first, second, fresh = file_db.get_session(), file_db.get_session(), file_db.get_session()
        try:
            a = self._service(first, strategy)
            b = self._service(second, strategy)
            root = a.attach(None, "Category", "R", "R")
            p = a.attach(root, "Category", "P", "P")
            q = a.attach(root, "Category", "Q", "Q")
            x = a.attach(root, "Category", "X", "X")
            w = a.attach(x, "Category", "W", "W")
            z = a.attach(w, "Category", "Z", "Z")
            leaf = a.attach(z, "Category", "L", "L")
            y = a.attach(root, "Category", "Y", "Y")

            # 第二个会话先读到 X 移动之前的祖先链 / 路径
            assert ids(b.ancestors(leaf)) == [root, x, w, z]
            if strategy.uses_path:
                assert b.path_of(w) == f"-{root}-{x}-{w}-"

            a.move(x, p)
            b.move(z, q)
            b.move(y, w)

            check = self._service(fresh, strategy)
            assert ids(check.ancestors(leaf)) == [root, q, z]
            assert ids(check.ancestors(y)) == [root, p, x, w]
            assert IntegrityService(fresh, "question_bank", strategy).check().is_valid
        finally:
            for s in (first, second, fresh):
                s.close()
