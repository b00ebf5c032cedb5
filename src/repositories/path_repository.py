"""
TreePath 数据访问层（物化路径索引）

负责计算并保存每个节点的路径字符串，回答基于前缀的子树查询。
rebuild_subtree 是唯一重新计算路径的地方。
"""
from collections import deque
from models import TreeNode, TreePath
from errors import NotFound
from utils.path_utils import child_path, path_depth
from .node_repository import NodeRepository


class PathRepository:
    """物化路径索引"""

    # 流式读取子树时每批拉取的行数
    STREAM_BATCH_SIZE = 500

    def __init__(self, session, nodes=None):
        """
        Args:
            session: SQLAlchemy 数据库会话
            nodes: NodeRepository，不传则基于同一会话创建
        """
        self.session = session
        self.nodes = nodes or NodeRepository(session)

    def path_of(self, node_id):
        """
        获取节点的路径

        Raises:
            NotFound: 没有路径记录（对有效节点而言这是完整性缺陷，而不是正常错误）
        """
        entry = self.session.get(TreePath, node_id)
        if entry is None:
            raise NotFound(node_id, f"节点 {node_id} 没有路径记录")
        return entry.path

    def lock_path(self, node_id):
        """
        加行锁读取节点的路径（刷新会话中缓存的记录），变更前用来取得最新的父路径

        Raises:
            NotFound: 没有路径记录
        """
        entry = self.session.query(TreePath).filter(
            TreePath.node_id == node_id
        ).with_for_update().populate_existing().first()
        if entry is None:
            raise NotFound(node_id, f"节点 {node_id} 没有路径记录")
        return entry.path

    def depth(self, node_id):
        """节点深度（根为 0）"""
        entry = self.session.get(TreePath, node_id)
        if entry is None:
            raise NotFound(node_id, f"节点 {node_id} 没有路径记录")
        return entry.depth

    def rebuild_subtree(self, root_id):
        """
        重新计算 root_id 及其所有有效后代的 path / depth

        从 root_id 开始按广度优先遍历 NodeRepository.children，
        子节点路径 = 重新计算后的父路径 + 子节点 ID。幂等，可以重复执行。

        Args:
            root_id: 子树根节点 ID

        Returns:
            int: 写入的路径记录数量
        """
        root = self.nodes.get(root_id)
        base = None if root.parent_id is None else self.lock_path(root.parent_id)

        queue = deque([(root.id, child_path(base, root.id))])
        written = 0
        while queue:
            node_id, path = queue.popleft()
            self._write(node_id, path)
            written += 1
            for child_id in self.nodes.child_ids(node_id):
                queue.append((child_id, child_path(path, child_id)))

        self.session.flush()
        return written

    def descendants_of(self, node_id, max_depth=None):
        """
        子树查询：所有以 path_of(node_id) 为真前缀的路径

        path 列有索引，LIKE 'prefix%' 是有序的范围扫描而不是全表扫描。
        起点不存在时立即抛出 NotFound；返回的生成器是一次性的，每次调用重新扫描。

        Args:
            node_id: 子树根节点 ID
            max_depth: 只返回相对深度 <= max_depth 的后代

        Returns:
            生成器，逐个产出后代节点 ID（不含自身）
        """
        prefix = self.path_of(node_id)
        query = self.session.query(TreePath.node_id).filter(
            TreePath.path.like(f"{prefix}%"),
            TreePath.path != prefix
        )
        if max_depth is not None:
            query = query.filter(TreePath.depth <= path_depth(prefix) + max_depth)
        query = query.order_by(TreePath.path)
        return self._stream_ids(query)

    def descendant_nodes(self, node_id):
        """
        子树中全部有效后代节点（不含自身），按路径顺序流式返回

        与 descendants_of 相同的前缀范围扫描，直接联表取出节点，
        迭代期间不需要再对同一连接发起其他查询。
        """
        prefix = self.path_of(node_id)
        query = self.session.query(TreeNode).join(
            TreePath, TreePath.node_id == TreeNode.id
        ).filter(
            TreePath.path.like(f"{prefix}%"),
            TreePath.path != prefix,
            TreeNode.is_active.is_(True)
        ).order_by(TreePath.path)
        return self._stream_nodes(query)

    def count_descendants(self, node_id):
        prefix = self.path_of(node_id)
        return self.session.query(TreePath).filter(
            TreePath.path.like(f"{prefix}%"),
            TreePath.path != prefix
        ).count()

    def lock_subtree(self, node_id):
        """
        对子树（含自身）的路径记录加行锁

        先锁住根的路径记录再按前缀加锁：等待并发的移动提交后，前缀是最新的。

        Returns:
            list: 被锁定的节点 ID
        """
        prefix = self.lock_path(node_id)
        rows = self.session.query(TreePath).filter(
            TreePath.path.like(f"{prefix}%")
        ).with_for_update().populate_existing().all()
        return [row.node_id for row in rows]

    def remove(self, node_ids):
        """
        删除路径记录

        Returns:
            int: 删除的行数
        """
        ids = list(node_ids)
        if not ids:
            return 0
        count = self.session.query(TreePath).filter(
            TreePath.node_id.in_(ids)
        ).delete(synchronize_session='fetch')
        self.session.flush()
        return count

    def find_by_path(self, path):
        """
        根据完整路径查找节点

        Returns:
            int 或 None: 节点 ID
        """
        row = self.session.query(TreePath.node_id).filter(TreePath.path == path).first()
        return row[0] if row else None

    def nodes_at_depth(self, tree, depth):
        """某棵树中位于指定深度的所有有效节点"""
        return self.session.query(TreeNode).join(
            TreePath, TreePath.node_id == TreeNode.id
        ).filter(
            TreeNode.tree == tree,
            TreeNode.is_active.is_(True),
            TreePath.depth == depth
        ).order_by(TreePath.path).all()

    def entries_for_tree(self, tree):
        """
        某棵树全部路径记录

        Returns:
            dict: {node_id: (path, depth)}
        """
        rows = self.session.query(TreePath.node_id, TreePath.path, TreePath.depth).join(
            TreeNode, TreeNode.id == TreePath.node_id
        ).filter(TreeNode.tree == tree).all()
        return {node_id: (path, depth) for node_id, path, depth in rows}

    def _write(self, node_id, path):
        depth = path_depth(path)
        entry = self.session.get(TreePath, node_id)
        if entry is None:
            self.session.add(TreePath(node_id=node_id, path=path, depth=depth))
        elif entry.path != path or entry.depth != depth:
            entry.path = path
            entry.depth = depth

    def _stream_ids(self, query):
        for (node_id,) in query.yield_per(self.STREAM_BATCH_SIZE):
            yield node_id

    def _stream_nodes(self, query):
        for node in query.yield_per(self.STREAM_BATCH_SIZE):
            yield node
