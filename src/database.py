"""
数据库连接管理
"""
import logging
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from models import Base
import config

logger = logging.getLogger(__name__)


class Database:
    """数据库连接管理类"""

    def __init__(self, url=None, echo=None):
        """
        Args:
            url: SQLAlchemy 连接 URL，不传则从 .env 读取
            echo: 是否输出 SQL（调试用），不传则读取 DB_ECHO
        """
        self.url = url or config.get_database_url()
        self.echo = config.get_bool('DB_ECHO') if echo is None else echo
        self.engine = None
        self.Session = None
        self._init_engine()

    def _init_engine(self):
        """初始化数据库引擎"""
        if self.url.startswith('sqlite'):
            # SQLite（测试 / 本地）：内存库需要共享同一个连接
            options = {'connect_args': {'check_same_thread': False}}
            if self.url in ('sqlite://', 'sqlite:///:memory:'):
                options['poolclass'] = StaticPool
            self.engine = create_engine(self.url, echo=self.echo, **options)
            event.listen(self.engine, 'connect', _enable_sqlite_foreign_keys)
        else:
            self.engine = create_engine(
                self.url,
                pool_pre_ping=True,      # 连接前先 ping，确保连接有效
                pool_recycle=3600,       # 1小时后回收连接
                # 加锁之后的普通读取要看到并发事务刚提交的数据（InnoDB 默认是 REPEATABLE READ）
                isolation_level='READ COMMITTED',
                echo=self.echo,
            )

        # 创建 Session 类
        self.Session = sessionmaker(bind=self.engine)

    def test_connection(self):
        """测试数据库连接"""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            logger.info("数据库连接成功: %s", self.engine.url.render_as_string(hide_password=True))
            return True
        except Exception as e:
            logger.error("数据库连接失败: %s", e)
            return False

    def create_tables(self):
        """创建所有数据表（仅创建不存在的表）"""
        Base.metadata.create_all(self.engine)
        # 验证关键表是否存在
        existing_tables = inspect(self.engine).get_table_names()
        expected_tables = [t.name for t in Base.metadata.sorted_tables]
        missing = [t for t in expected_tables if t not in existing_tables]
        if missing:
            logger.error("以下表未创建成功: %s", missing)
            return False
        logger.info("已确认 %d 张表存在: %s", len(expected_tables), expected_tables)
        return True

    def reset_tables(self):
        """删除并重建所有数据表（危险操作！会清空所有数据）"""
        logger.warning("正在删除并重建所有树表")
        Base.metadata.drop_all(self.engine)
        Base.metadata.create_all(self.engine)
        return True

    def get_session(self):
        """获取数据库会话"""
        return self.Session()

    def dispose(self):
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite 默认不检查外键，每个新连接打开 foreign_keys"""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
