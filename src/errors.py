"""
树引擎错误类型

调用方可以精确知道是哪条规则失败：
- NotFound / InvalidParent: 节点不存在或已停用
- IllegalChildType: 父子类型不兼容
- DuplicateSibling: 同一父节点下 code 重复
- CycleDetected: 移动后节点会成为自己的祖先
- SubtreeNotEmpty: 严格删除策略下子树非空
- IntegrityViolation: 索引与节点表不一致（缺陷信号，不应出现）
- TransientStorageError: 存储冲突重试耗尽
"""


class TreeError(Exception):
    """所有树引擎错误的基类"""


class NotFound(TreeError):
    """节点不存在或已停用"""

    def __init__(self, node_id, message=None):
        self.node_id = node_id
        super().__init__(message or f"节点不存在或已停用: {node_id}")


class InvalidParent(NotFound):
    """创建节点时父节点不存在、已停用或属于另一棵树"""

    def __init__(self, parent_id, message=None):
        super().__init__(parent_id, message or f"无效的父节点: {parent_id}")

    @property
    def parent_id(self):
        return self.node_id


class IllegalChildType(TreeError):
    def __init__(self, parent_type, child_type):
        self.parent_type = parent_type
        self.child_type = child_type
        if parent_type is None:
            message = f"类型 {child_type} 不能作为根节点"
        else:
            message = f"类型 {child_type} 不能作为 {parent_type} 的子节点"
        super().__init__(message)


class DuplicateSibling(TreeError):
    def __init__(self, parent_id, code):
        self.parent_id = parent_id
        self.code = code
        where = f"父节点 {parent_id}" if parent_id is not None else "根节点"
        super().__init__(f"{where} 下已存在 code={code} 的有效节点")


class CycleDetected(TreeError):
    def __init__(self, node_id, new_parent_id):
        self.node_id = node_id
        self.new_parent_id = new_parent_id
        super().__init__(
            f"不能把节点 {node_id} 移动到 {new_parent_id} 下：{new_parent_id} 是它自身或其后代"
        )


class SubtreeNotEmpty(TreeError):
    def __init__(self, node_id, descendant_count):
        self.node_id = node_id
        self.descendant_count = descendant_count
        super().__init__(f"节点 {node_id} 仍有 {descendant_count} 个有效后代，拒绝删除")


class IntegrityViolation(TreeError):
    """
    路径索引 / 闭包表与节点表不一致

    正确的事务边界下不可达；出现即为缺陷，不在本地处理也不自动修复。
    """

    def __init__(self, message, issues=None):
        self.issues = list(issues or [])
        super().__init__(message)


class TransientStorageError(TreeError):
    """存储事务冲突（死锁 / 锁等待超时），有限次重试后仍失败"""

    def __init__(self, operation, attempts, last_error):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} 在 {attempts} 次尝试后仍然冲突: {last_error}")
