"""
物化路径工具函数

路径格式：分隔符包围的节点 ID 序列，从根到本节点（含本节点）
- "-1-": 根节点 1
- "-1-2-": 节点 2，父节点为 1
- "-1-2-3-": 节点 3，祖先链 1 → 2

首尾都带分隔符，所以 "-1-2-" 是 "-1-2-3-" 的前缀，而 "-1-2-" 不是 "-1-23-" 的前缀。
"""

PATH_DELIMITER = "-"


def build_path(node_ids) -> str:
    """
    由根到节点的 ID 序列构造路径

    Examples:
        >>> build_path([1, 2, 3])
        '-1-2-3-'
        >>> build_path([7])
        '-7-'
    """
    ids = [str(int(node_id)) for node_id in node_ids]
    if not ids:
        raise ValueError("路径至少包含一个节点")
    return PATH_DELIMITER + PATH_DELIMITER.join(ids) + PATH_DELIMITER


def child_path(parent_path, node_id) -> str:
    """
    在父路径后追加一个节点；parent_path 为 None 表示根节点

    Examples:
        >>> child_path("-1-2-", 5)
        '-1-2-5-'
        >>> child_path(None, 1)
        '-1-'
    """
    if parent_path is None:
        return build_path([node_id])
    validate_path(parent_path)
    return f"{parent_path}{int(node_id)}{PATH_DELIMITER}"


def parse_path(path: str) -> list:
    """
    解析路径为 ID 列表（根在前）

    Raises:
        ValueError: 路径格式不正确

    Examples:
        >>> parse_path("-1-2-3-")
        [1, 2, 3]
    """
    validate_path(path)
    return [int(segment) for segment in path.strip(PATH_DELIMITER).split(PATH_DELIMITER)]


def validate_path(path: str) -> None:
    """检查路径格式：首尾分隔符，中间为非空数字段"""
    if (
        not isinstance(path, str)
        or len(path) < 3
        or not path.startswith(PATH_DELIMITER)
        or not path.endswith(PATH_DELIMITER)
    ):
        raise ValueError(f"Invalid path format: {path!r}. Expected format: -id-id-")

    segments = path[1:-1].split(PATH_DELIMITER)
    if not all(segment.isdigit() for segment in segments):
        raise ValueError(f"Invalid path segment in: {path!r}")


def path_depth(path: str) -> int:
    """
    路径深度 = 段数 - 1（根节点为 0）

    Examples:
        >>> path_depth("-1-")
        0
        >>> path_depth("-1-2-3-")
        2
    """
    return len(parse_path(path)) - 1


def parent_path(path: str):
    """
    去掉最后一段得到父路径；根节点返回 None

    Examples:
        >>> parent_path("-1-2-3-")
        '-1-2-'
        >>> parent_path("-1-") is None
        True
    """
    ids = parse_path(path)
    if len(ids) == 1:
        return None
    return build_path(ids[:-1])


def last_segment(path: str) -> int:
    """路径的最后一段，即节点自身的 ID"""
    return parse_path(path)[-1]


def contains_segment(path: str, node_id) -> bool:
    """
    路径中是否含有某个节点（即该节点是路径终点本身或其祖先）

    Examples:
        >>> contains_segment("-1-2-3-", 2)
        True
        >>> contains_segment("-1-23-", 2)
        False
    """
    return f"{PATH_DELIMITER}{int(node_id)}{PATH_DELIMITER}" in path


def is_ancestor_path(ancestor: str, descendant: str) -> bool:
    """
    ancestor 是否为 descendant 的真前缀（严格祖先）

    Examples:
        >>> is_ancestor_path("-1-2-", "-1-2-3-")
        True
        >>> is_ancestor_path("-1-2-", "-1-2-")
        False
        >>> is_ancestor_path("-1-2-", "-1-23-")
        False
    """
    return descendant != ancestor and descendant.startswith(ancestor)
