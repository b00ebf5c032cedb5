"""
树引擎业务逻辑服务
调用方唯一直接使用的组件：协调节点表、物化路径和闭包表，
执行类型兼容 / 环检测等规则，并保证每次变更是一个原子事务。

一个实例对应一棵树（tree），索引策略和类型规则按树配置：
- curriculum（课程体系树）: Root → Stage → Grade → Semester → Subject，只维护物化路径
- question_bank（题库分类树）: 同时维护物化路径和闭包表
"""
import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
import config
from errors import (
    TreeError, NotFound, IllegalChildType,
    DuplicateSibling, CycleDetected, SubtreeNotEmpty
)
from repositories import NodeRepository, PathRepository, ClosureRepository
from utils.path_utils import parse_path, contains_segment
from utils.retry import RetryPolicy, run_with_retry
from .events import (
    TreeEvent, TreeEvents,
    NODE_ATTACHED, NODE_MOVED, NODE_RENAMED, CHILDREN_REORDERED, SUBTREE_DELETED
)
from .hierarchy_config import IndexStrategy, get_hierarchy

logger = logging.getLogger(__name__)


class DeletePolicy(enum.Enum):
    """删除子树的策略"""

    CASCADE = 'cascade'
    REJECT_IF_NON_EMPTY = 'reject_if_non_empty'


@dataclass
class TreeStatistics:
    """一棵树的统计信息（只统计有效节点）"""

    tree: str
    total_nodes: int = 0
    root_nodes: int = 0
    leaf_nodes: int = 0
    max_depth: int = 0
    average_depth: float = 0.0
    average_children: float = 0.0


class HierarchyService:
    """树引擎"""

    # 流式读取子树节点时每批加载的数量
    SUBTREE_BATCH_SIZE = 200

    def __init__(self, session, tree, rules, strategy=IndexStrategy.BOTH,
                 events=None, retry_policy=None, sleep_func=None):
        """
        初始化服务

        Args:
            session: SQLAlchemy 数据库会话
            tree: 树名称，如 "curriculum"
            rules: ChildTypeRules 父子类型规则
            strategy: IndexStrategy 索引策略
            events: TreeEvents，不传则新建（无订阅者）
            retry_policy: move / delete 的冲突重试配置
            sleep_func: 可注入的 sleep，测试用
        """
        self.session = session
        self.tree = tree
        self.rules = rules
        self.strategy = strategy
        self.events = events or TreeEvents()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.get_max_retries(),
            base_delay=config.get_retry_delay()
        )
        self._sleep = sleep_func

        self.nodes = NodeRepository(session)
        self.paths = PathRepository(session, self.nodes)
        self.closure = ClosureRepository(session)

        self._depth = 0
        self._rollback_only = False
        self._pending_events = []

    @classmethod
    def from_config(cls, session, tree, config_path=None, **kwargs):
        """
        按 hierarchies.yml 中的配置创建服务

        Args:
            session: SQLAlchemy 数据库会话
            tree: 树名称
            config_path: 配置文件路径，不传则使用默认配置
        """
        hierarchy = get_hierarchy(tree, config_path)
        return cls(session, tree, hierarchy.rules, hierarchy.strategy, **kwargs)

    # ------------------------------------------------------------------
    # 事务
    # ------------------------------------------------------------------

    @contextmanager
    def batch(self):
        """
        把多次变更合并为一个事务：全部成功才提交，事件在提交后统一发布

        批处理中任何一次变更失败，整个批处理都会回滚（即使调用方捕获了该异常）。
        """
        with self._unit_of_work():
            yield self

    @contextmanager
    def _unit_of_work(self):
        outermost = self._depth == 0
        self._depth += 1
        try:
            yield
            if outermost:
                if self._rollback_only:
                    raise TreeError("批处理中有变更失败，整体回滚")
                self.session.commit()
        except BaseException:
            # KeyboardInterrupt、超时等中断同样回滚
            if outermost:
                self.session.rollback()
                self._pending_events.clear()
            else:
                self._rollback_only = True
            raise
        finally:
            self._depth -= 1
            if outermost:
                self._rollback_only = False

        if outermost:
            events, self._pending_events = self._pending_events, []
            for event in events:
                self.events.publish(event)

    def _mutate(self, operation, work, retry=False):
        """
        在一个事务中执行 work；retry=True 时遇到存储冲突整体重做
        （只有最外层事务才重试，批处理内部的冲突交给批处理的调用方）
        """
        def unit():
            with self._unit_of_work():
                return work()

        if retry and self._depth == 0:
            return run_with_retry(operation, unit, self.retry_policy, sleep_func=self._sleep)
        return unit()

    def _emit(self, kind, node_id, **data):
        self._pending_events.append(TreeEvent(kind=kind, tree=self.tree, node_id=node_id, data=data))

    # ------------------------------------------------------------------
    # 变更
    # ------------------------------------------------------------------

    def attach(self, parent_id, type_tag, name, code, order_index=None, description=None):
        """
        在 parent_id 下创建新节点（parent_id 为 None 时创建根节点）

        Returns:
            int: 新节点 ID

        Raises:
            NotFound: 父节点不存在或已停用
            IllegalChildType: 类型不能挂在该父节点下
            DuplicateSibling: 同级 code 冲突
        """
        return self._mutate('attach', lambda: self._attach(
            parent_id, type_tag, name, code, order_index, description
        ))

    def _attach(self, parent_id, type_tag, name, code, order_index, description):
        parent_type = None
        if parent_id is not None:
            parent = self._get_in_tree(parent_id, for_update=True)
            parent_type = parent.type_tag

        if not self.rules.can_attach(parent_type, type_tag):
            raise IllegalChildType(parent_type, type_tag)

        if order_index is not None:
            self._make_room(parent_id, order_index)

        node_id = self.nodes.create(
            self.tree, parent_id, type_tag, name, code,
            order_index=order_index, description=description
        )
        if self.strategy.uses_path:
            self.paths.rebuild_subtree(node_id)
        if self.strategy.uses_closure:
            self.closure.on_attach(node_id, parent_id)

        logger.info("[%s] 新建节点 %s (%s %s)，父节点 %s", self.tree, node_id, type_tag, code, parent_id)
        self._emit(NODE_ATTACHED, node_id, parent_id=parent_id, type_tag=type_tag, code=code)
        return node_id

    def move(self, node_id, new_parent_id, order_index=None):
        """
        把 node_id 连同其子树移动到 new_parent_id 下（None 表示成为根节点）

        移动到当前父节点下只调整顺序。

        Raises:
            NotFound: 节点或新父节点不存在 / 已停用
            CycleDetected: 新父节点是节点自身或其后代
            IllegalChildType: 新父节点的类型不能容纳该节点
            DuplicateSibling: 新父节点下已有相同 code 的节点
            TransientStorageError: 存储冲突重试耗尽
        """
        self._mutate('move', lambda: self._move(node_id, new_parent_id, order_index), retry=True)

    def _move(self, node_id, new_parent_id, order_index):
        node = self._get_in_tree(node_id, for_update=True)
        old_parent_id = node.parent_id

        new_parent = None
        if new_parent_id is not None:
            new_parent = self._get_in_tree(new_parent_id, for_update=True)
        if old_parent_id is not None and old_parent_id != new_parent_id:
            self.nodes.get(old_parent_id, include_inactive=True, for_update=True)
        if new_parent_id != old_parent_id:
            self._lock_subtree(node_id)

        # 环检测先于类型检查：移动到自己的后代下无论类型如何都不合法
        if new_parent_id is not None and self._in_subtree(new_parent_id, node_id, lock=True):
            raise CycleDetected(node_id, new_parent_id)

        parent_type = new_parent.type_tag if new_parent is not None else None
        if not self.rules.can_attach(parent_type, node.type_tag):
            raise IllegalChildType(parent_type, node.type_tag)

        if new_parent_id == old_parent_id:
            if order_index is not None and order_index != node.order_index:
                self._make_room(new_parent_id, order_index, exclude_id=node_id)
                self.nodes.set_order(node_id, order_index)
                self._emit(CHILDREN_REORDERED, node_id, parent_id=new_parent_id)
            return

        if self.nodes.get_by_code(self.tree, new_parent_id, node.code, exclude_id=node_id) is not None:
            raise DuplicateSibling(new_parent_id, node.code)

        if order_index is None:
            order_index = self.nodes.next_order_index(self.tree, new_parent_id)
        else:
            self._make_room(new_parent_id, order_index)

        self.nodes.set_parent(node_id, new_parent_id, order_index)
        if self.strategy.uses_path:
            self.paths.rebuild_subtree(node_id)
        if self.strategy.uses_closure:
            self.closure.on_move(node_id, old_parent_id, new_parent_id)

        logger.info("[%s] 节点 %s 从 %s 移动到 %s", self.tree, node_id, old_parent_id, new_parent_id)
        self._emit(NODE_MOVED, node_id, old_parent_id=old_parent_id, new_parent_id=new_parent_id)

    def delete_subtree(self, node_id, policy=DeletePolicy.REJECT_IF_NON_EMPTY):
        """
        删除（软删除）节点及其子树

        引用这些节点的题目 / 试卷不会被级联删除，由内容层自行处理“节点已停用”。

        Args:
            node_id: 子树根节点
            policy: CASCADE 级联停用整棵子树；REJECT_IF_NON_EMPTY 有有效后代时拒绝

        Returns:
            int: 停用的节点数量

        Raises:
            NotFound: 节点不存在或已停用
            SubtreeNotEmpty: REJECT_IF_NON_EMPTY 策略下仍有后代
            TransientStorageError: 存储冲突重试耗尽
        """
        policy = DeletePolicy(policy)
        return self._mutate('delete_subtree', lambda: self._delete_subtree(node_id, policy), retry=True)

    def _delete_subtree(self, node_id, policy):
        node = self._get_in_tree(node_id, for_update=True)
        if node.parent_id is not None:
            self.nodes.get(node.parent_id, include_inactive=True, for_update=True)

        self._lock_subtree(node_id)
        descendant_ids = self._strict_descendant_ids(node_id)

        if policy is DeletePolicy.REJECT_IF_NON_EMPTY and descendant_ids:
            raise SubtreeNotEmpty(node_id, len(descendant_ids))

        subtree_ids = [node_id] + descendant_ids
        count = self.nodes.soft_delete_many(subtree_ids)
        if self.strategy.uses_closure:
            self.closure.on_delete(node_id)
        if self.strategy.uses_path:
            self.paths.remove(subtree_ids)

        logger.info("[%s] 删除子树 %s（%d 个节点，策略 %s）", self.tree, node_id, count, policy.value)
        self._emit(SUBTREE_DELETED, node_id, node_ids=subtree_ids, policy=policy.value)
        return count

    def rename(self, node_id, name=None, code=None):
        """
        修改名称和 / 或 code

        Raises:
            NotFound: 节点不存在或已停用
            DuplicateSibling: 新 code 与同级冲突
        """
        def work():
            self._get_in_tree(node_id, for_update=True)
            node = self.nodes.rename(node_id, name=name, code=code)
            self._emit(NODE_RENAMED, node_id, name=node.name, code=node.code)
            return node

        return self._mutate('rename', work)

    def reorder_children(self, parent_id, ordered_ids):
        """
        按给定顺序重排子节点（order_index 依次为 0..n-1）

        Args:
            parent_id: 父节点 ID，None 表示重排根节点
            ordered_ids: 全部有效子节点的 ID，按新顺序排列

        Raises:
            ValueError: ordered_ids 与当前有效子节点集合不一致
        """
        def work():
            if parent_id is not None:
                self._get_in_tree(parent_id, for_update=True)
                current = self.nodes.child_ids(parent_id)
            else:
                current = [root.id for root in self.nodes.roots(self.tree)]

            ordered = list(ordered_ids)
            if len(ordered) != len(set(ordered)) or set(ordered) != set(current):
                raise ValueError(
                    f"重排列表必须恰好包含父节点 {parent_id} 的全部有效子节点: {sorted(current)}"
                )
            for index, child_id in enumerate(ordered):
                self.nodes.set_order(child_id, index)
            self._emit(CHILDREN_REORDERED, parent_id, order=ordered)

        self._mutate('reorder_children', work)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def get(self, node_id):
        """根据 ID 获取有效节点"""
        return self._get_in_tree(node_id)

    def children(self, node_id):
        """有效子节点，按 order_index 排序"""
        self._get_in_tree(node_id)
        return self.nodes.children(node_id)

    def roots(self):
        return self.nodes.roots(self.tree)

    def ancestors(self, node_id, include_self=False):
        """
        祖先节点，根在前

        Args:
            node_id: 节点 ID
            include_self: 是否把节点自身放在最后
        """
        self._get_in_tree(node_id)
        ids = self._ancestor_ids(node_id)
        if not include_self:
            ids = ids[:-1]
        return self.nodes.get_many(ids)

    def subtree(self, node_id):
        """
        节点及其全部有效后代（不保证顺序）

        起点不存在时立即抛出 NotFound；返回一次性生成器，反映调用时的快照。
        """
        root = self._get_in_tree(node_id)
        if self.strategy.uses_path:
            return self._iter_subtree(root, self.paths.descendant_nodes(node_id))
        return self._iter_closure_subtree(root, self._strict_descendant_ids(node_id))

    def descendant_ids(self, node_id, max_depth=None):
        """
        后代 ID（不含自身）

        Args:
            max_depth: 只返回相对深度 <= max_depth 的后代
        """
        self._get_in_tree(node_id)
        return self._strict_descendant_ids(node_id, max_depth)

    def depth(self, node_id):
        """节点深度（根为 0）"""
        self._get_in_tree(node_id)
        if self.strategy.uses_path:
            return self.paths.depth(node_id)
        return self.closure.depth_of(node_id)

    def path_of(self, node_id):
        """节点的物化路径（仅 PATH / BOTH 策略）"""
        self._get_in_tree(node_id)
        if not self.strategy.uses_path:
            raise TreeError(f"树 {self.tree} 不维护物化路径")
        return self.paths.path_of(node_id)

    def is_ancestor(self, ancestor_id, descendant_id):
        """ancestor_id 是否为 descendant_id 的严格祖先"""
        self._get_in_tree(ancestor_id)
        self._get_in_tree(descendant_id)
        return ancestor_id != descendant_id and self._in_subtree(descendant_id, ancestor_id)

    def search(self, term, limit=50):
        """按名称或 code 模糊搜索有效节点"""
        return self.nodes.search(self.tree, term, limit)

    def nodes_by_type(self, type_tag):
        return self.nodes.by_type(self.tree, type_tag)

    def nodes_at_depth(self, depth):
        """指定深度上的全部有效节点"""
        if self.strategy.uses_path:
            return self.paths.nodes_at_depth(self.tree, depth)
        return self.closure.nodes_at_depth(self.tree, depth)

    def export_tree(self, root_id=None):
        """
        导出为嵌套字典（可直接序列化为 JSON / YAML）

        Args:
            root_id: 导出的子树根；不传则导出整棵树的全部根节点

        Returns:
            dict: {'tree': 树名, 'nodes': [{name, code, type, description, children}, ...]}
        """
        if root_id is None:
            roots = self.nodes.roots(self.tree)
        else:
            roots = [self._get_in_tree(root_id)]
        return {
            'tree': self.tree,
            'nodes': [self._export_node(root) for root in roots],
        }

    def statistics(self):
        """
        统计有效节点：总数、根、叶子、最大 / 平均深度、非叶子节点的平均子节点数

        Returns:
            TreeStatistics
        """
        nodes = self.nodes.all_active(self.tree)
        stats = TreeStatistics(tree=self.tree)
        if not nodes:
            return stats

        parent_of = {node.id: node.parent_id for node in nodes}
        child_count = {}
        for node in nodes:
            if node.parent_id in parent_of:
                child_count[node.parent_id] = child_count.get(node.parent_id, 0) + 1

        depths = {}
        for node_id in parent_of:
            depth, current = 0, parent_of[node_id]
            while current is not None and current in parent_of and depth <= len(parent_of):
                depth += 1
                current = parent_of[current]
            depths[node_id] = depth

        stats.total_nodes = len(nodes)
        stats.root_nodes = sum(1 for node in nodes if node.parent_id is None)
        stats.leaf_nodes = stats.total_nodes - len(child_count)
        stats.max_depth = max(depths.values())
        stats.average_depth = round(sum(depths.values()) / len(depths), 2)
        if child_count:
            stats.average_children = round(sum(child_count.values()) / len(child_count), 2)
        return stats

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    def _get_in_tree(self, node_id, for_update=False):
        node = self.nodes.get(node_id, for_update=for_update)
        if node.tree != self.tree:
            raise NotFound(node_id, f"节点 {node_id} 不属于树 {self.tree}")
        return node

    def _lock_subtree(self, node_id):
        """锁定子树的路径 / 闭包记录；必须在读取子树索引之前调用"""
        if self.strategy.uses_path:
            self.paths.lock_subtree(node_id)
        if self.strategy.uses_closure:
            self.closure.lock_subtree(node_id)

    def _in_subtree(self, candidate_id, root_id, lock=False):
        """candidate_id 是否为 root_id 自身或其后代（lock=True 时加锁读取最新路径）"""
        if self.strategy.uses_closure:
            return self.closure.is_ancestor(root_id, candidate_id)
        path = self.paths.lock_path(candidate_id) if lock else self.paths.path_of(candidate_id)
        return contains_segment(path, root_id)

    def _ancestor_ids(self, node_id):
        """祖先 ID（根在前，含自身）"""
        if self.strategy.uses_closure:
            return self.closure.ancestors_of(node_id, root_first=True)
        return parse_path(self.paths.path_of(node_id))

    def _strict_descendant_ids(self, node_id, max_depth=None):
        if self.strategy.uses_path:
            return list(self.paths.descendants_of(node_id, max_depth))
        return [d for d in self.closure.descendants_of(node_id, max_depth) if d != node_id]

    @staticmethod
    def _iter_subtree(root, descendants):
        yield root
        yield from descendants

    def _iter_closure_subtree(self, root, descendant_ids):
        yield root
        batch = []
        for descendant_id in descendant_ids:
            batch.append(descendant_id)
            if len(batch) >= self.SUBTREE_BATCH_SIZE:
                yield from self._active(self.nodes.get_many(batch))
                batch = []
        if batch:
            yield from self._active(self.nodes.get_many(batch))

    @staticmethod
    def _active(nodes):
        return [node for node in nodes if node.is_active]

    def _make_room(self, parent_id, order_index, exclude_id=None):
        """把 order_index 及之后的同级节点顺延一位，保证同级顺序唯一"""
        siblings = self.nodes.children(parent_id) if parent_id is not None else self.nodes.roots(self.tree)
        taken = {sibling.order_index for sibling in siblings if sibling.id != exclude_id}
        if order_index not in taken:
            return
        for sibling in sorted(siblings, key=lambda s: s.order_index, reverse=True):
            if sibling.id != exclude_id and sibling.order_index >= order_index:
                self.nodes.set_order(sibling.id, sibling.order_index + 1)

    def _export_node(self, node):
        return {
            'name': node.name,
            'code': node.code,
            'type': node.type_tag,
            'description': node.description,
            'children': [self._export_node(child) for child in self.nodes.children(node.id)],
        }
