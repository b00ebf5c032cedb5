"""
工具函数模块
"""
from .path_utils import (
    PATH_DELIMITER,
    build_path,
    child_path,
    parse_path,
    validate_path,
    path_depth,
    parent_path,
    last_segment,
    contains_segment,
    is_ancestor_path
)
from .type_rules import ChildTypeRules
from .retry import RetryPolicy, run_with_retry

__all__ = [
    'PATH_DELIMITER',
    'build_path',
    'child_path',
    'parse_path',
    'validate_path',
    'path_depth',
    'parent_path',
    'last_segment',
    'contains_segment',
    'is_ancestor_path',
    'ChildTypeRules',
    'RetryPolicy',
    'run_with_retry'
]
