"""
树领域事件
变更事务提交成功后发布，供审计日志等外部模块订阅（外部模块不在本引擎范围内）
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

NODE_ATTACHED = 'node_attached'
NODE_MOVED = 'node_moved'
NODE_RENAMED = 'node_renamed'
CHILDREN_REORDERED = 'children_reordered'
SUBTREE_DELETED = 'subtree_deleted'

ALL_EVENTS = '*'


@dataclass(frozen=True)
class TreeEvent:
    """
    一次已提交的树变更

    Attributes:
        kind: 事件类型，如 node_moved
        tree: 所属树
        node_id: 变更涉及的节点
        data: 附加信息，如 {'old_parent_id': 2, 'new_parent_id': 5}
    """

    kind: str
    tree: str
    node_id: int
    data: dict = field(default_factory=dict)


class TreeEvents:
    """事件订阅 / 发布"""

    def __init__(self):
        self._handlers = defaultdict(list)

    def subscribe(self, kind, handler):
        """
        订阅事件

        Args:
            kind: 事件类型；'*' 表示订阅全部
            handler: 接收 TreeEvent 的可调用对象
        """
        self._handlers[kind].append(handler)
        return handler

    def unsubscribe(self, kind, handler):
        if handler in self._handlers.get(kind, []):
            self._handlers[kind].remove(handler)

    def publish(self, event):
        """
        通知订阅者

        变更已经提交，订阅者的异常无法回滚变更，只记录日志，继续通知其余订阅者。

        Returns:
            int: 成功处理的订阅者数量
        """
        handled = 0
        for handler in list(self._handlers.get(event.kind, [])) + list(self._handlers.get(ALL_EVENTS, [])):
            try:
                handler(event)
                handled += 1
            except Exception:
                logger.exception("事件订阅者处理 %s (node=%s) 失败", event.kind, event.node_id)
        return handled
