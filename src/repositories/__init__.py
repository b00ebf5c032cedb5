"""
数据访问层（Repository）包
"""
from .node_repository import NodeRepository
from .path_repository import PathRepository
from .closure_repository import ClosureRepository

__all__ = ['NodeRepository', 'PathRepository', 'ClosureRepository']
