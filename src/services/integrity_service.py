"""
树索引完整性检查
对照节点表的父指针，检查物化路径和闭包表是否一致；只报告，不自动修复。
repair() 是显式的运维操作（CLI check --repair）。
"""
import logging
from dataclasses import dataclass, field
from errors import IntegrityViolation
from repositories import NodeRepository, PathRepository, ClosureRepository
from utils.path_utils import child_path
from .hierarchy_config import IndexStrategy

logger = logging.getLogger(__name__)

MISSING_PATH = 'missing_path'
PATH_MISMATCH = 'path_mismatch'
STALE_PATH = 'stale_path'
CLOSURE_MISMATCH = 'closure_mismatch'
STALE_CLOSURE = 'stale_closure'
CYCLE = 'cycle'
ORPHAN = 'orphan'


@dataclass
class IntegrityIssue:
    """一条不一致记录"""

    kind: str
    node_id: int
    detail: str = ''

    def __str__(self):
        return f"[{self.kind}] node {self.node_id}: {self.detail}"


@dataclass
class IntegrityReport:
    """一棵树的检查结果"""

    tree: str
    checked: int = 0
    issues: list = field(default_factory=list)

    @property
    def is_valid(self):
        return not self.issues

    def by_kind(self, kind):
        return [issue for issue in self.issues if issue.kind == kind]

    def add(self, kind, node_id, detail=''):
        self.issues.append(IntegrityIssue(kind, node_id, detail))


class IntegrityService:
    """完整性检查服务"""

    def __init__(self, session, tree, strategy=IndexStrategy.BOTH):
        """
        Args:
            session: SQLAlchemy 数据库会话
            tree: 树名称
            strategy: 这棵树维护的索引
        """
        self.session = session
        self.tree = tree
        self.strategy = IndexStrategy(strategy)
        self.nodes = NodeRepository(session)
        self.paths = PathRepository(session, self.nodes)
        self.closure = ClosureRepository(session)

    def check(self):
        """
        检查整棵树

        Returns:
            IntegrityReport
        """
        active = self.nodes.all_active(self.tree)
        parent_of = {node.id: node.parent_id for node in active}
        report = IntegrityReport(tree=self.tree, checked=len(active))

        chains = {}
        for node in active:
            chain = self._chain(node.id, parent_of, report)
            if chain is not None:
                chains[node.id] = chain

        if self.strategy.uses_path:
            self._check_paths(chains, set(parent_of), report)
        if self.strategy.uses_closure:
            self._check_closure(chains, report)

        for issue in report.issues:
            logger.error("[%s] 索引不一致: %s", self.tree, issue)
        return report

    def assert_consistent(self):
        """
        Raises:
            IntegrityViolation: 存在任何不一致
        """
        report = self.check()
        if not report.is_valid:
            raise IntegrityViolation(
                f"树 {self.tree} 有 {len(report.issues)} 处索引不一致",
                report.issues
            )
        return report

    def repair(self):
        """
        由父指针重建路径和闭包表（一个事务）

        环上的节点无法重建，会保留在报告中。

        Returns:
            IntegrityReport: 重建后的检查结果
        """
        try:
            active = self.nodes.all_active(self.tree)
            parent_of = {node.id: node.parent_id for node in active}
            inactive = self.nodes.inactive_ids(self.tree)

            if self.strategy.uses_path:
                self.paths.remove(list(parent_of) + inactive)
                written = 0
                for root in self.nodes.roots(self.tree):
                    written += self.paths.rebuild_subtree(root.id)
                logger.info("[%s] 已重建 %d 条路径记录", self.tree, written)

            if self.strategy.uses_closure:
                self.closure.remove(inactive)
                rows = self.closure.rebuild(parent_of)
                logger.info("[%s] 已重建 %d 条闭包记录", self.tree, rows)

            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return self.check()

    def _chain(self, node_id, parent_of, report):
        """
        沿父指针走到根，返回祖先链（根在前，含自身）；遇到环或悬空父节点返回 None
        """
        chain, seen, current = [], set(), node_id
        while current is not None:
            if current in seen:
                report.add(CYCLE, node_id, f"父指针链在节点 {current} 处成环")
                return None
            if current not in parent_of:
                report.add(ORPHAN, node_id, f"祖先 {current} 不存在或已停用")
                return None
            seen.add(current)
            chain.append(current)
            current = parent_of[current]
        chain.reverse()
        return chain

    def _check_paths(self, chains, active_ids, report):
        entries = self.paths.entries_for_tree(self.tree)
        for node_id, chain in chains.items():
            expected = None
            for segment in chain:
                expected = child_path(expected, segment)
            entry = entries.get(node_id)
            if entry is None:
                report.add(MISSING_PATH, node_id, f"应为 {expected}")
            elif entry[0] != expected or entry[1] != len(chain) - 1:
                report.add(PATH_MISMATCH, node_id,
                           f"实际 {entry[0]} (depth {entry[1]})，应为 {expected} (depth {len(chain) - 1})")

        for node_id in sorted(set(entries) - active_ids):
            report.add(STALE_PATH, node_id, f"非有效节点仍有路径 {entries[node_id][0]}")

    def _check_closure(self, chains, report):
        edges = self.closure.edges_for(chains)
        for node_id, chain in chains.items():
            expected = {ancestor_id: len(chain) - 1 - index for index, ancestor_id in enumerate(chain)}
            if edges.get(node_id, {}) != expected:
                report.add(CLOSURE_MISMATCH, node_id,
                           f"实际 {sorted(edges.get(node_id, {}).items())}，应为 {sorted(expected.items())}")

        inactive = self.nodes.inactive_ids(self.tree)
        stale = self.closure.edges_touching(inactive)
        if stale:
            for node_id in inactive:
                if self.closure.edges_touching([node_id]):
                    report.add(STALE_CLOSURE, node_id, "已停用节点仍有闭包记录")
