"""
树实例配置
从 data/hierarchies.yml 读取每棵树的索引策略和父子类型规则
"""
import enum
import json
import os
from dataclasses import dataclass
import yaml
from jsonschema import Draft7Validator
import config
from utils.type_rules import ChildTypeRules


_SCHEMA_PATH = os.path.join(
    os.path.dirname(__file__),       # src/services/
    '..', '..', 'data', 'hierarchies.schema.json'
)

_SCHEMA = None  # 延迟加载


def _load_schema():
    """加载 JSON Schema（只读一次，缓存在模块级别）"""
    path = os.path.normpath(_SCHEMA_PATH)
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


class IndexStrategy(enum.Enum):
    """树使用的索引：仅物化路径、仅闭包表，或两者都维护"""

    PATH = 'path'
    CLOSURE = 'closure'
    BOTH = 'both'

    @property
    def uses_path(self):
        return self in (IndexStrategy.PATH, IndexStrategy.BOTH)

    @property
    def uses_closure(self):
        return self in (IndexStrategy.CLOSURE, IndexStrategy.BOTH)


@dataclass
class HierarchyConfig:
    """一棵树的配置"""

    name: str
    strategy: IndexStrategy
    rules: ChildTypeRules
    description: str = ''


def validate_config(data):
    """
    校验 hierarchies 配置是否符合 schema

    Returns:
        list[str]: 校验错误列表，空列表表示通过
    """
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


def load_hierarchies(path=None):
    """
    读取全部树配置

    Args:
        path: YAML 文件路径，不传则使用 HIERARCHIES_CONFIG / 默认路径

    Returns:
        dict: {树名: HierarchyConfig}

    Raises:
        ValueError: 配置不符合 schema
    """
    path = path or config.get_hierarchies_config()
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    errors = validate_config(data)
    if errors:
        raise ValueError(f"树配置校验失败：{path}\n" + '\n'.join(errors))

    hierarchies = {}
    for name, tree_data in data['hierarchies'].items():
        hierarchies[name] = HierarchyConfig(
            name=name,
            strategy=IndexStrategy(tree_data.get('strategy', 'both')),
            rules=ChildTypeRules.from_dict(tree_data),
            description=tree_data.get('description', '')
        )
    return hierarchies


def get_hierarchy(name, path=None):
    """
    获取一棵树的配置

    Raises:
        KeyError: 配置中没有这棵树
    """
    hierarchies = load_hierarchies(path)
    if name not in hierarchies:
        raise KeyError(f"未配置的树: {name}（可选: {', '.join(sorted(hierarchies))}）")
    return hierarchies[name]
