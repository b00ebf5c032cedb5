"""
TreeNode 数据访问层
只提供节点记录的基础读写，不含任何树语义（路径 / 闭包 / 级联由 HierarchyService 负责）

注意：本层只 flush 不 commit，事务边界由调用方掌控。
"""
from sqlalchemy import func, or_
from models import TreeNode
from errors import NotFound, InvalidParent, DuplicateSibling


class NodeRepository:
    """TreeNode 数据访问类"""

    def __init__(self, session):
        """
        初始化 Repository

        Args:
            session: SQLAlchemy 数据库会话
        """
        self.session = session

    def create(self, tree, parent_id, type_tag, name, code, order_index=None, description=None):
        """
        创建节点

        Args:
            tree: 所属树
            parent_id: 父节点 ID，None 表示根节点
            type_tag: 节点类型
            name: 显示名称
            code: 同级唯一的编码
            order_index: 同级顺序，None 表示追加到最后
            description: 可选描述

        Returns:
            int: 新节点 ID

        Raises:
            InvalidParent: 父节点不存在、已停用或属于另一棵树
            DuplicateSibling: 同一父节点下已有相同 code 的有效节点
        """
        if parent_id is not None:
            parent = self.session.get(TreeNode, parent_id)
            if parent is None or not parent.is_active or parent.tree != tree:
                raise InvalidParent(parent_id)

        if self.get_by_code(tree, parent_id, code) is not None:
            raise DuplicateSibling(parent_id, code)

        if order_index is None:
            order_index = self.next_order_index(tree, parent_id)

        node = TreeNode(
            tree=tree,
            parent_id=parent_id,
            type_tag=type_tag,
            name=name,
            code=code,
            order_index=order_index,
            description=description,
            is_active=True
        )
        self.session.add(node)
        self.session.flush()
        return node.id

    def get(self, node_id, include_inactive=False, for_update=False):
        """
        根据 ID 获取节点

        Args:
            node_id: 节点 ID
            include_inactive: 是否允许返回已停用节点
            for_update: 是否加行锁（SELECT ... FOR UPDATE）

        Returns:
            TreeNode 对象

        Raises:
            NotFound: 节点不存在（或已停用且 include_inactive=False）
        """
        if node_id is None:
            raise NotFound(node_id)

        query = self.session.query(TreeNode).filter(TreeNode.id == node_id)
        if for_update:
            # 加锁读取必须刷新会话中已缓存的对象
            query = query.with_for_update().populate_existing()
        node = query.first()

        if node is None or (not node.is_active and not include_inactive):
            raise NotFound(node_id)
        return node

    def get_many(self, node_ids):
        """
        批量获取节点（含已停用），按传入顺序返回，缺失的 ID 跳过

        Returns:
            list: TreeNode 对象列表
        """
        ids = list(node_ids)
        if not ids:
            return []
        nodes = self.session.query(TreeNode).filter(TreeNode.id.in_(ids)).all()
        by_id = {node.id: node for node in nodes}
        return [by_id[node_id] for node_id in ids if node_id in by_id]

    def exists(self, node_id):
        """检查有效节点是否存在"""
        return self.session.query(TreeNode).filter(
            TreeNode.id == node_id,
            TreeNode.is_active.is_(True)
        ).count() > 0

    def get_by_code(self, tree, parent_id, code, exclude_id=None):
        """
        在同一父节点（或同一棵树的根节点）中按 code 查找有效节点

        Returns:
            TreeNode 对象或 None
        """
        query = self.session.query(TreeNode).filter(
            TreeNode.tree == tree,
            TreeNode.code == code,
            TreeNode.is_active.is_(True)
        )
        query = self._filter_parent(query, parent_id)
        if exclude_id is not None:
            query = query.filter(TreeNode.id != exclude_id)
        return query.first()

    def children(self, parent_id):
        """
        获取有效子节点，按 order_index 排序；叶子节点返回空列表

        Returns:
            list: TreeNode 对象列表
        """
        return self.session.query(TreeNode).filter(
            TreeNode.parent_id == parent_id,
            TreeNode.is_active.is_(True)
        ).order_by(TreeNode.order_index, TreeNode.id).all()

    def child_ids(self, parent_id):
        rows = self.session.query(TreeNode.id).filter(
            TreeNode.parent_id == parent_id,
            TreeNode.is_active.is_(True)
        ).order_by(TreeNode.order_index, TreeNode.id).all()
        return [row[0] for row in rows]

    def roots(self, tree):
        """获取某棵树的有效根节点，按 order_index 排序"""
        return self.session.query(TreeNode).filter(
            TreeNode.tree == tree,
            TreeNode.parent_id.is_(None),
            TreeNode.is_active.is_(True)
        ).order_by(TreeNode.order_index, TreeNode.id).all()

    def next_order_index(self, tree, parent_id):
        """
        同级下一个可用的 order_index（最大值 + 1，没有同级时为 0）
        """
        query = self.session.query(func.max(TreeNode.order_index)).filter(
            TreeNode.tree == tree,
            TreeNode.is_active.is_(True)
        )
        query = self._filter_parent(query, parent_id)
        current = query.scalar()
        return 0 if current is None else current + 1

    def set_parent(self, node_id, new_parent_id, new_order_index):
        """
        仅更新 parent_id / order_index 字段，不做任何级联
        （路径和闭包的一致性由调用方负责）
        """
        node = self.get(node_id)
        node.parent_id = new_parent_id
        node.order_index = new_order_index
        self.session.flush()
        return node

    def set_order(self, node_id, order_index):
        node = self.get(node_id)
        node.order_index = order_index
        self.session.flush()
        return node

    def rename(self, node_id, name=None, code=None):
        """
        更新名称和 / 或 code

        Raises:
            DuplicateSibling: 新 code 与同级有效节点冲突
        """
        node = self.get(node_id)
        if code is not None and code != node.code:
            if self.get_by_code(node.tree, node.parent_id, code, exclude_id=node.id) is not None:
                raise DuplicateSibling(node.parent_id, code)
            node.code = code
        if name is not None:
            node.name = name
        self.session.flush()
        return node

    def soft_delete(self, node_id):
        """标记为停用；不级联到子节点"""
        node = self.get(node_id)
        node.is_active = False
        self.session.flush()
        return node

    def soft_delete_many(self, node_ids):
        """
        批量停用

        Returns:
            int: 实际停用的节点数量
        """
        ids = list(node_ids)
        if not ids:
            return 0
        count = self.session.query(TreeNode).filter(
            TreeNode.id.in_(ids),
            TreeNode.is_active.is_(True)
        ).update({TreeNode.is_active: False}, synchronize_session='fetch')
        self.session.flush()
        return count

    def by_type(self, tree, type_tag):
        """获取某棵树中某个类型的所有有效节点"""
        return self.session.query(TreeNode).filter(
            TreeNode.tree == tree,
            TreeNode.type_tag == type_tag,
            TreeNode.is_active.is_(True)
        ).order_by(TreeNode.id).all()

    def search(self, tree, term, limit=50):
        """
        按名称或 code 模糊搜索（不区分大小写）

        Returns:
            list: TreeNode 对象列表
        """
        pattern = f"%{term.lower()}%"
        return self.session.query(TreeNode).filter(
            TreeNode.tree == tree,
            TreeNode.is_active.is_(True),
            or_(
                func.lower(TreeNode.name).like(pattern),
                func.lower(TreeNode.code).like(pattern)
            )
        ).order_by(TreeNode.id).limit(limit).all()

    def all_active(self, tree):
        """某棵树的全部有效节点"""
        return self.session.query(TreeNode).filter(
            TreeNode.tree == tree,
            TreeNode.is_active.is_(True)
        ).order_by(TreeNode.id).all()

    def inactive_ids(self, tree):
        """某棵树全部已停用节点的 ID"""
        rows = self.session.query(TreeNode.id).filter(
            TreeNode.tree == tree,
            TreeNode.is_active.is_(False)
        ).all()
        return [row[0] for row in rows]

    def count(self, tree, include_inactive=False):
        query = self.session.query(TreeNode).filter(TreeNode.tree == tree)
        if not include_inactive:
            query = query.filter(TreeNode.is_active.is_(True))
        return query.count()

    @staticmethod
    def _filter_parent(query, parent_id):
        if parent_id is None:
            return query.filter(TreeNode.parent_id.is_(None))
        return query.filter(TreeNode.parent_id == parent_id)
