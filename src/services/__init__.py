"""
业务逻辑层（Service）包
"""
from .events import TreeEvent, TreeEvents
from .hierarchy_config import IndexStrategy, HierarchyConfig, load_hierarchies, get_hierarchy
from .hierarchy_service import HierarchyService, DeletePolicy, TreeStatistics
from .integrity_service import IntegrityService, IntegrityReport, IntegrityIssue
from .tree_import_service import TreeImportService

__all__ = [
    'TreeEvent',
    'TreeEvents',
    'IndexStrategy',
    'HierarchyConfig',
    'load_hierarchies',
    'get_hierarchy',
    'HierarchyService',
    'DeletePolicy',
    'TreeStatistics',
    'IntegrityService',
    'IntegrityReport',
    'IntegrityIssue',
    'TreeImportService'
]
