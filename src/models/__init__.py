"""
数据模型包
"""
from sqlalchemy.orm import declarative_base

# 创建 ORM 基类
Base = declarative_base()

# 导出所有模型：树节点及其索引
from .tree_node import TreeNode
from .tree_path import TreePath
from .tree_closure import TreeClosure

__all__ = [
    'Base',
    'TreeNode',
    'TreePath',
    'TreeClosure',
]
