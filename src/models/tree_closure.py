"""
TreeClosure 数据模型
闭包表：每一对 (祖先, 后代) 一行，包括自身 (id, id, 0)

查询某节点的所有祖先 → descendant_id = 节点
查询某节点的所有后代 → ancestor_id = 节点
"""
from sqlalchemy import Column, Integer, ForeignKey, PrimaryKeyConstraint, Index
from . import Base


class TreeClosure(Base):
    """祖先-后代闭包表"""
    __tablename__ = 'tree_closure'

    ancestor_id = Column(
        Integer,
        ForeignKey('tree_nodes.id', ondelete='CASCADE'),
        nullable=False
    )
    descendant_id = Column(
        Integer,
        ForeignKey('tree_nodes.id', ondelete='CASCADE'),
        nullable=False
    )
    # 0 = 自身，1 = 子节点，以此类推
    depth = Column(Integer, nullable=False)

    # 表级约束
    __table_args__ = (
        PrimaryKeyConstraint('ancestor_id', 'descendant_id'),
        Index('ix_tree_closure_descendant', 'descendant_id', 'depth'),
    )

    def __repr__(self):
        return f"<TreeClosure {self.ancestor_id} → {self.descendant_id} depth={self.depth}>"
