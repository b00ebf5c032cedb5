"""
树数据导入服务
从 YAML 文件读取嵌套的节点描述，逐个通过 HierarchyService.attach 导入，
类型规则、同级唯一等约束与正常变更完全一致。
"""
import json
import logging
import os
import yaml
from jsonschema import Draft7Validator
from .hierarchy_service import HierarchyService

logger = logging.getLogger(__name__)


_SCHEMA_PATH = os.path.join(
    os.path.dirname(__file__),       # src/services/
    '..', '..', 'data', 'trees', 'schema.json'
)


def _load_schema():
    """加载 JSON Schema（只读一次，缓存在模块级别）"""
    path = os.path.normpath(_SCHEMA_PATH)
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


_SCHEMA = None  # 延迟加载


class TreeImportService:
    """树数据导入服务"""

    @staticmethod
    def validate_yaml(yaml_path):
        """
        校验一个树 YAML 文件是否符合 schema。

        Args:
            yaml_path: YAML 文件路径

        Returns:
            list[str]: 校验错误列表，空列表表示通过

        Raises:
            FileNotFoundError: YAML 或 schema 文件不存在
        """
        with open(yaml_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        return TreeImportService._validate_data(data)

    @staticmethod
    def _validate_data(data):
        """校验已解析的 YAML 内容，返回错误列表"""
        global _SCHEMA
        if _SCHEMA is None:
            _SCHEMA = _load_schema()

        validator = Draft7Validator(_SCHEMA)
        errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

        messages = []
        for err in errors:
            path = ' -> '.join(str(p) for p in err.absolute_path) or '(root)'
            messages.append(f"  [{path}] {err.message}")

        return messages

    def __init__(self, session, config_path=None):
        """
        初始化服务

        Args:
            session: SQLAlchemy 数据库会话
            config_path: hierarchies.yml 路径，不传则使用默认配置
        """
        self.session = session
        self.config_path = config_path

    def import_from_yaml(self, yaml_path, parent_id=None, hierarchy=None, skip_existing=True):
        """
        从 YAML 文件导入一棵树（或挂到已有节点下的一棵子树）

        整个文件在一个批处理事务中执行：全部成功才提交，任一节点失败则整体回滚。

        Args:
            yaml_path: YAML 文件路径
            parent_id: 导入到哪个已有节点下，None 表示作为根节点导入
            hierarchy: 已构造好的 HierarchyService，不传则按 YAML 中的 tree 从配置创建
            skip_existing: 同一父节点下已有相同 code 的节点时复用它（重复导入幂等）

        Returns:
            dict: 统计信息 {'tree', 'created', 'existing', 'root_ids'}

        Raises:
            ValueError: YAML 不符合 schema，或与 hierarchy 的树不一致
        """
        with open(yaml_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)

        errors = self._validate_data(data)
        if errors:
            error_msg = '\n'.join(errors)
            raise ValueError(
                f"YAML 文件校验失败：{yaml_path}\n{error_msg}"
            )

        tree = data['tree']
        if hierarchy is None:
            hierarchy = HierarchyService.from_config(self.session, tree, self.config_path)
        elif hierarchy.tree != tree:
            raise ValueError(f"YAML 中的树 {tree} 与服务的树 {hierarchy.tree} 不一致")

        logger.info("开始导入树 %s: %s", tree, yaml_path)

        stats = {
            'tree': tree,
            'created': 0,
            'existing': 0,
            'root_ids': []
        }

        with hierarchy.batch():
            for node_data in data.get('nodes', []):
                node_id = self._import_node(hierarchy, parent_id, node_data, stats, skip_existing)
                stats['root_ids'].append(node_id)

        logger.info(
            "树 %s 导入完成: 新建 %d 个节点，复用 %d 个已有节点",
            tree, stats['created'], stats['existing']
        )
        return stats

    def _import_node(self, hierarchy, parent_id, node_data, stats, skip_existing):
        """递归导入一个节点及其 children，返回节点 ID"""
        existing = None
        if skip_existing:
            existing = hierarchy.nodes.get_by_code(hierarchy.tree, parent_id, node_data['code'])

        if existing is not None:
            node_id = existing.id
            stats['existing'] += 1
        else:
            node_id = hierarchy.attach(
                parent_id,
                node_data['type'],
                node_data['name'],
                node_data['code'],
                description=node_data.get('description')
            )
            stats['created'] += 1

        for child_data in node_data.get('children', []):
            self._import_node(hierarchy, node_id, child_data, stats, skip_existing)
        return node_id
