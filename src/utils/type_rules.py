"""
节点类型规则
定义某棵树中哪些类型可以作为根节点、每个类型下允许挂哪些子类型

例如课程体系树：
  Root → Stage → Grade → Semester → Subject
Grade 只能挂在 Stage 下；Stage 不能挂在 Grade 下。
"""


class ChildTypeRules:
    """父子类型兼容规则"""

    def __init__(self, root_types, children):
        """
        Args:
            root_types: 允许作为根节点的类型列表
            children: {父类型: [允许的子类型, ...]}；未列出的父类型不允许有子节点
        """
        self.root_types = frozenset(root_types)
        self.children = {
            parent_type: frozenset(child_types or [])
            for parent_type, child_types in children.items()
        }

    @classmethod
    def from_dict(cls, data):
        """从 hierarchies.yml 中一棵树的配置构造"""
        return cls(data.get('root_types', []), data.get('children', {}))

    @classmethod
    def chain(cls, *type_tags):
        """
        线性类型链：第一个为根类型，每个类型只能挂下一个类型

        Examples:
            >>> rules = ChildTypeRules.chain("Root", "Stage", "Grade")
            >>> rules.can_attach("Root", "Stage")
            True
            >>> rules.can_attach("Grade", "Stage")
            False
        """
        if not type_tags:
            raise ValueError("类型链至少包含一个类型")
        children = {
            parent_type: [child_type]
            for parent_type, child_type in zip(type_tags, type_tags[1:])
        }
        children[type_tags[-1]] = []
        return cls([type_tags[0]], children)

    @property
    def known_types(self):
        known = set(self.root_types) | set(self.children)
        for child_types in self.children.values():
            known |= child_types
        return frozenset(known)

    def can_attach(self, parent_type, child_type):
        """
        child_type 能否挂在 parent_type 下；parent_type 为 None 表示作为根节点
        """
        if parent_type is None:
            return child_type in self.root_types
        return child_type in self.children.get(parent_type, frozenset())

    def allowed_children(self, parent_type):
        return sorted(self.children.get(parent_type, frozenset()))

    def __repr__(self):
        return f"<ChildTypeRules roots={sorted(self.root_types)} parents={sorted(self.children)}>"
