"""
TreeClosure 数据访问层（闭包表索引）

维护 (祖先, 后代, 深度) 三元组，不解析路径字符串即可回答任意祖先 / 后代集合查询。
题库分类树在此之上做标签筛选，所以需要闭包表。
"""
from sqlalchemy import func, insert
from models import TreeClosure, TreeNode


class ClosureRepository:
    """闭包表索引"""

    def __init__(self, session):
        """
        Args:
            session: SQLAlchemy 数据库会话
        """
        self.session = session

    def ancestors_of(self, node_id, root_first=True):
        """
        所有 descendant_id = node_id 的记录（含自身，深度 0）

        Args:
            node_id: 节点 ID
            root_first: True 按深度降序（根在前），False 按深度升序（自身在前）

        Returns:
            list: 祖先 ID 列表；空列表表示该节点没有闭包记录
        """
        order = TreeClosure.depth.desc() if root_first else TreeClosure.depth.asc()
        rows = self.session.query(TreeClosure.ancestor_id).filter(
            TreeClosure.descendant_id == node_id
        ).order_by(order).all()
        return [row[0] for row in rows]

    def descendants_of(self, node_id, max_depth=None):
        """
        所有 ancestor_id = node_id 的记录（含自身）

        Args:
            node_id: 节点 ID
            max_depth: 只返回 depth <= max_depth 的后代

        Returns:
            list: 后代 ID 列表，按深度升序
        """
        query = self.session.query(TreeClosure.descendant_id).filter(
            TreeClosure.ancestor_id == node_id
        )
        if max_depth is not None:
            query = query.filter(TreeClosure.depth <= max_depth)
        rows = query.order_by(TreeClosure.depth, TreeClosure.descendant_id).all()
        return [row[0] for row in rows]

    def depth_of(self, node_id):
        """节点到根的距离（即自身最深的一条祖先记录）；没有记录时返回 None"""
        ancestors = self._ancestor_rows(node_id)
        if not ancestors:
            return None
        return max(depth for _, depth in ancestors)

    def nodes_at_depth(self, tree, depth):
        """
        某棵树中位于指定深度的所有有效节点
        （节点深度 = 它作为后代的记录中最大的 depth）
        """
        depths = self.session.query(
            TreeClosure.descendant_id.label('node_id'),
            func.max(TreeClosure.depth).label('depth')
        ).group_by(TreeClosure.descendant_id).subquery()
        return self.session.query(TreeNode).join(
            depths, depths.c.node_id == TreeNode.id
        ).filter(
            TreeNode.tree == tree,
            TreeNode.is_active.is_(True),
            depths.c.depth == depth
        ).order_by(TreeNode.order_index, TreeNode.id).all()

    def is_ancestor(self, ancestor_id, descendant_id):
        """ancestor_id 是否为 descendant_id 的祖先（含自身）"""
        return self.session.query(TreeClosure).filter(
            TreeClosure.ancestor_id == ancestor_id,
            TreeClosure.descendant_id == descendant_id
        ).count() > 0

    def on_attach(self, node_id, parent_id):
        """
        新叶子节点：插入 (n, n, 0)，并继承父节点的每一个祖先（深度 + 1）

        Returns:
            int: 插入的行数
        """
        rows = [{'ancestor_id': node_id, 'descendant_id': node_id, 'depth': 0}]
        if parent_id is not None:
            for ancestor_id, depth in self._ancestor_rows(parent_id, for_update=True):
                rows.append({
                    'ancestor_id': ancestor_id,
                    'descendant_id': node_id,
                    'depth': depth + 1
                })
        self._insert(rows)
        self.session.flush()
        return len(rows)

    def on_move(self, node_id, old_parent_id, new_parent_id):
        """
        移动子树：只重算跨越切割点的边，子树内部的边保持不变

        1. 删除 (a, d)：d 属于被移动子树，a 不在子树内（即 old_parent 的祖先链，含 old_parent）
        2. 插入 new_parent 祖先链 × 子树 的笛卡尔积，深度相加

        代价为 O(祖先数 × 子树大小)，与整棵树大小无关。

        Returns:
            tuple: (删除行数, 插入行数)
        """
        subtree = self._descendant_rows(node_id, for_update=True)
        subtree_ids = [descendant_id for descendant_id, _ in subtree]

        removed = 0
        if old_parent_id is not None:
            removed = self.session.query(TreeClosure).filter(
                TreeClosure.descendant_id.in_(subtree_ids),
                TreeClosure.ancestor_id.notin_(subtree_ids)
            ).delete(synchronize_session='fetch')

        rows = []
        if new_parent_id is not None:
            for ancestor_id, ancestor_depth in self._ancestor_rows(new_parent_id, for_update=True):
                for descendant_id, descendant_depth in subtree:
                    rows.append({
                        'ancestor_id': ancestor_id,
                        'descendant_id': descendant_id,
                        'depth': ancestor_depth + descendant_depth + 1
                    })
        self._insert(rows)
        self.session.flush()
        return removed, len(rows)

    def lock_subtree(self, node_id):
        """
        对子树（ancestor_id = node_id，含自身）的闭包记录加行锁

        Returns:
            list: 被锁定的后代 ID
        """
        return [descendant_id for descendant_id, _ in self._descendant_rows(node_id, for_update=True)]

    def on_delete(self, node_id):
        """
        删除子树：删除后代是 node_id 或其后代的所有记录
        （祖先位于子树内的记录，其后代必然也在子树内，一并删除）

        Returns:
            int: 删除的行数
        """
        subtree_ids = self.descendants_of(node_id)
        if not subtree_ids:
            return 0
        count = self.session.query(TreeClosure).filter(
            TreeClosure.descendant_id.in_(subtree_ids)
        ).delete(synchronize_session='fetch')
        self.session.flush()
        return count

    def rebuild(self, parent_of):
        """
        由父指针全量重建一组节点的闭包记录（运维修复用，不会被隐式调用）

        Args:
            parent_of: {node_id: parent_id}，parent_id 为 None 或不在字典中的节点视为根

        Returns:
            int: 写入的行数
        """
        node_ids = list(parent_of)
        if node_ids:
            self.session.query(TreeClosure).filter(
                TreeClosure.descendant_id.in_(node_ids)
            ).delete(synchronize_session='fetch')

        rows = []
        for node_id in node_ids:
            current, depth, seen = node_id, 0, set()
            while current is not None and current in parent_of and current not in seen:
                seen.add(current)
                rows.append({'ancestor_id': current, 'descendant_id': node_id, 'depth': depth})
                current = parent_of.get(current)
                depth += 1
        self._insert(rows)
        self.session.flush()
        return len(rows)

    def remove(self, node_ids):
        """
        删除引用了给定节点（祖先或后代位置）的全部记录

        Returns:
            int: 删除的行数
        """
        ids = list(node_ids)
        if not ids:
            return 0
        count = self.session.query(TreeClosure).filter(
            (TreeClosure.ancestor_id.in_(ids)) | (TreeClosure.descendant_id.in_(ids))
        ).delete(synchronize_session='fetch')
        self.session.flush()
        return count

    def edges_touching(self, node_ids):
        """
        引用了给定节点（祖先或后代位置）的记录数，用于检查删除后是否有残留
        """
        ids = list(node_ids)
        if not ids:
            return 0
        return self.session.query(TreeClosure).filter(
            (TreeClosure.ancestor_id.in_(ids)) | (TreeClosure.descendant_id.in_(ids))
        ).count()

    def edges_for(self, node_ids):
        """
        一组节点作为后代的全部记录

        Returns:
            dict: {descendant_id: {ancestor_id: depth}}
        """
        ids = list(node_ids)
        result = {node_id: {} for node_id in ids}
        if not ids:
            return result
        rows = self.session.query(
            TreeClosure.ancestor_id, TreeClosure.descendant_id, TreeClosure.depth
        ).filter(TreeClosure.descendant_id.in_(ids)).all()
        for ancestor_id, descendant_id, depth in rows:
            result[descendant_id][ancestor_id] = depth
        return result

    def _ancestor_rows(self, node_id, for_update=False):
        query = self.session.query(TreeClosure.ancestor_id, TreeClosure.depth).filter(
            TreeClosure.descendant_id == node_id
        )
        if for_update:
            query = query.with_for_update()
        rows = query.all()
        return [(ancestor_id, depth) for ancestor_id, depth in rows]

    def _descendant_rows(self, node_id, for_update=False):
        query = self.session.query(TreeClosure.descendant_id, TreeClosure.depth).filter(
            TreeClosure.ancestor_id == node_id
        )
        if for_update:
            query = query.with_for_update()
        rows = query.all()
        return [(descendant_id, depth) for descendant_id, depth in rows]

    def _insert(self, rows):
        # 批量插入，不经过 identity map，避免与刚删除的同主键对象冲突
        if rows:
            self.session.execute(insert(TreeClosure), rows)
