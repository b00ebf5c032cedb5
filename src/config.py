"""
运行配置
从 .env / 环境变量读取数据库连接和树引擎参数
"""
import os
from dotenv import load_dotenv

# 加载 .env 文件中的环境变量
load_dotenv()

_PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), '..'))

DEFAULT_HIERARCHIES_CONFIG = os.path.join(_PROJECT_ROOT, 'data', 'hierarchies.yml')
TREES_DATA_DIR = os.path.join(_PROJECT_ROOT, 'data', 'trees')


def get_database_url():
    """
    获取数据库连接 URL

    优先使用 DATABASE_URL；否则用 DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD
    拼出 MySQL 连接 URL。

    Returns:
        str: SQLAlchemy 连接 URL

    Raises:
        ValueError: 配置不完整
    """
    url = os.getenv('DATABASE_URL')
    if url:
        return url

    db_host = os.getenv('DB_HOST')
    db_port = os.getenv('DB_PORT', '3306')
    db_name = os.getenv('DB_NAME')
    db_user = os.getenv('DB_USER')
    db_password = os.getenv('DB_PASSWORD')

    # 验证配置完整性
    if not all([db_host, db_name, db_user, db_password]):
        raise ValueError(
            "数据库配置不完整！请检查 .env 文件是否包含 DATABASE_URL，或以下全部配置：\n"
            "DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD"
        )

    return f"mysql+pymysql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"


def get_bool(name, default=False):
    """读取布尔型环境变量（1/true/yes/on 为真）"""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def get_max_retries():
    """move / delete 遇到存储冲突时的最大尝试次数"""
    return int(os.getenv('TREE_MAX_RETRIES', '3'))


def get_retry_delay():
    """两次重试之间的基础等待秒数"""
    return float(os.getenv('TREE_RETRY_DELAY', '0.05'))


def get_hierarchies_config():
    """树配置文件路径（每棵树的索引策略和子类型规则）"""
    return os.getenv('HIERARCHIES_CONFIG', DEFAULT_HIERARCHIES_CONFIG)


def get_log_level():
    return os.getenv('LOG_LEVEL', 'INFO').upper()
