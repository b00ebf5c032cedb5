"""
TreeNode 数据模型
树中的一个节点（课程体系树 / 题库分类树共用）

字段说明：
- tree: 节点所属的树实例，如 "curriculum"、"question_bank"；同级/根规则都在树内生效
- type_tag: 节点类型，如 Root / Stage / Grade；父子类型由 ChildTypeRules 约束
- code: 同一父节点下的有效节点之间唯一（非全局唯一）
- order_index: 同级显示顺序
- is_active: 软删除标记，停用后不再参与默认遍历，但保留以维持内容引用
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Index, func
from sqlalchemy.orm import relationship
from . import Base


class TreeNode(Base):
    """树节点表"""
    __tablename__ = 'tree_nodes'

    # 主键：自增，创建后不可变
    id = Column(Integer, primary_key=True, autoincrement=True)

    tree = Column(String(50), nullable=False)

    # 外键：父节点（根节点为 NULL）
    parent_id = Column(
        Integer,
        ForeignKey('tree_nodes.id'),
        nullable=True,
        index=True
    )

    # 节点信息
    name = Column(String(255), nullable=False)
    code = Column(String(100), nullable=False)
    type_tag = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    # 关系
    parent = relationship("TreeNode", remote_side=[id], foreign_keys=[parent_id])

    # 派生索引（一对一）
    path_entry = relationship(
        "TreePath",
        back_populates="node",
        uselist=False,
        passive_deletes=True
    )

    __table_args__ = (
        Index('ix_tree_nodes_tree_parent_code', 'tree', 'parent_id', 'code'),
        Index('ix_tree_nodes_tree_type', 'tree', 'type_tag'),
    )

    @property
    def is_root(self):
        return self.parent_id is None

    def __repr__(self):
        return f"<TreeNode {self.id}: {self.type_tag} {self.code} parent={self.parent_id}>"

    def __str__(self):
        state = "" if self.is_active else " [inactive]"
        return f"{self.name} ({self.type_tag} {self.code}){state}"
