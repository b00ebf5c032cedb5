"""
主程序入口
树索引的运维命令：建表、查看、统计、完整性检查与修复、导出
"""
import sys
import argparse
import logging
import yaml
import config
from database import Database
from errors import TreeError
from services import HierarchyService, IntegrityService


def parse_args(argv=None):
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        description='课程体系 / 题库分类树管理工具',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用示例:
  ikhtibar-tree init                                   # 创建数据表
  ikhtibar-tree show curriculum                        # 打印整棵课程体系树
  ikhtibar-tree show question_bank --root 12           # 只打印某个节点下的子树
  ikhtibar-tree stats curriculum                       # 统计信息
  ikhtibar-tree check question_bank                    # 检查路径 / 闭包表是否一致
  ikhtibar-tree check question_bank --repair           # 由父指针重建索引
  ikhtibar-tree export curriculum --output out.yml     # 导出为可重新导入的 YAML
        """
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    init = subparsers.add_parser('init', help='创建数据表（仅创建不存在的表）')
    init.add_argument(
        '--reset',
        action='store_true',
        help='删除并重建所有树表（会清空数据！）'
    )

    show = subparsers.add_parser('show', help='以缩进大纲打印树')
    show.add_argument('tree', help='树名称，如 curriculum')
    show.add_argument('--root', type=int, help='子树根节点 ID（不指定则打印全部根节点）')

    stats = subparsers.add_parser('stats', help='打印树的统计信息')
    stats.add_argument('tree', help='树名称')

    check = subparsers.add_parser('check', help='检查索引完整性')
    check.add_argument('tree', help='树名称')
    check.add_argument(
        '--repair',
        action='store_true',
        help='由父指针重建物化路径和闭包表（显式运维操作）'
    )

    export = subparsers.add_parser('export', help='导出为 YAML')
    export.add_argument('tree', help='树名称')
    export.add_argument('--root', type=int, help='子树根节点 ID')
    export.add_argument('--output', help='输出文件（不指定则输出到标准输出）')

    return parser.parse_args(argv)


def print_outline(service, root_id=None):
    """按缩进打印大纲"""
    roots = [service.get(root_id)] if root_id is not None else service.roots()
    if not roots:
        print("(空树)")
        return

    def visit(node, level):
        print(f"{'  ' * level}• {node.name} [{node.type_tag} {node.code}] #{node.id}")
        for child in service.children(node.id):
            visit(child, level + 1)

    for root in roots:
        visit(root, 0)


def run_stats(service):
    stats = service.statistics()
    print("=" * 60)
    print(f"树统计: {stats.tree}")
    print("=" * 60)
    print(f"节点总数:       {stats.total_nodes}")
    print(f"根节点:         {stats.root_nodes}")
    print(f"叶子节点:       {stats.leaf_nodes}")
    print(f"最大深度:       {stats.max_depth}")
    print(f"平均深度:       {stats.average_depth}")
    print(f"平均子节点数:   {stats.average_children}")


def run_check(session, service, repair):
    """
    Returns:
        int: 退出码，有问题时为 1
    """
    integrity = IntegrityService(session, service.tree, service.strategy)
    print("=" * 60)
    print(f"完整性检查: {service.tree}（索引策略: {service.strategy.value}）")
    print("=" * 60)

    report = integrity.repair() if repair else integrity.check()
    if repair:
        print("✓ 已由父指针重建索引")

    print(f"检查节点数: {report.checked}")
    if report.is_valid:
        print("✓ 索引一致")
        return 0

    print(f"✗ 发现 {len(report.issues)} 处不一致:")
    for issue in report.issues:
        print(f"  {issue}")
    return 1


def run_export(service, root_id, output):
    data = service.export_tree(root_id)
    text = yaml.safe_dump(data, allow_unicode=True, sort_keys=False)
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(text)
        print(f"✓ 已导出到 {output}")
    else:
        print(text)


def main(argv=None):
    """主函数"""
    args = parse_args(argv)
    logging.basicConfig(
        level=config.get_log_level(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    db = Database()
    if not db.test_connection():
        print("\n数据库连接失败，请检查 .env 配置")
        return 1

    if args.command == 'init':
        if args.reset:
            db.reset_tables()
        if not db.create_tables():
            print("\n数据表创建失败")
            return 1
        print("✓ 数据表已就绪")
        return 0

    session = db.get_session()
    exit_code = 0
    try:
        service = HierarchyService.from_config(session, args.tree)
        if args.command == 'show':
            print_outline(service, args.root)
        elif args.command == 'stats':
            run_stats(service)
        elif args.command == 'check':
            exit_code = run_check(session, service, args.repair)
        elif args.command == 'export':
            run_export(service, args.root, args.output)
    except (TreeError, KeyError, ValueError) as e:
        print(f"✗ {e}")
        exit_code = 1
    finally:
        session.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
