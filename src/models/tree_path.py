"""
TreePath 数据模型
物化路径：每个节点一行，path 形如 "-1-2-3-"（根到本节点，含本节点）

depth = 路径段数 - 1（根节点为 0）
path 列建索引，子树查询是按前缀的有序范围扫描
"""
from sqlalchemy import Column, Integer, String, ForeignKey
from sqlalchemy.orm import relationship
from . import Base


class TreePath(Base):
    """物化路径表"""
    __tablename__ = 'tree_paths'

    node_id = Column(
        Integer,
        ForeignKey('tree_nodes.id', ondelete='CASCADE'),
        primary_key=True
    )
    path = Column(String(1024), nullable=False, index=True)
    depth = Column(Integer, nullable=False)

    node = relationship("TreeNode", back_populates="path_entry")

    def __repr__(self):
        return f"<TreePath {self.node_id}: {self.path} depth={self.depth}>"
