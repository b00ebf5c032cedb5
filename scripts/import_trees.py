#!/usr/bin/env python3
"""
树数据导入脚本
从 YAML 文件读取课程体系 / 题库分类树并导入数据库

使用方法：
  python scripts/import_trees.py --trees curriculum question_bank
  python scripts/import_trees.py --all
  python scripts/import_trees.py --validate                # 校验所有 YAML 文件
  python scripts/import_trees.py --validate curriculum     # 校验指定文件
"""
import sys
import os
import argparse
import glob
import logging

# 添加 src 目录到 Python 路径
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import config
from database import Database
from errors import TreeError
from services import TreeImportService

# YAML 文件目录
DATA_DIR = config.TREES_DATA_DIR


def find_yaml_files(tree_names=None):
    """
    查找 YAML 文件

    Args:
        tree_names: 指定的文件名列表，如 ["curriculum"]。
                    None 表示查找所有。

    Returns:
        list: [(name, yaml_path), ...]
    """
    if tree_names:
        files = []
        for name in tree_names:
            yaml_path = os.path.join(DATA_DIR, f"{name.lower()}.yml")
            if os.path.exists(yaml_path):
                files.append((name, yaml_path))
            else:
                print(f"⚠️ 未找到 YAML 文件: {yaml_path}")
        return files

    pattern = os.path.join(DATA_DIR, '*.yml')
    files = []
    for yaml_path in sorted(glob.glob(pattern)):
        name = os.path.splitext(os.path.basename(yaml_path))[0]
        files.append((name, yaml_path))
    return files


def parse_args():
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        description='导入树数据（从 YAML 文件）',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用示例:
  python scripts/import_trees.py --trees curriculum                 # 导入课程体系树
  python scripts/import_trees.py --trees curriculum question_bank   # 导入多棵树
  python scripts/import_trees.py --all                              # 导入所有 YAML 文件
  python scripts/import_trees.py --validate                         # 校验所有 YAML 文件（不需要数据库）
  python scripts/import_trees.py --trees question_bank --parent 3   # 挂到已有节点 3 下
        """
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        '--trees',
        nargs='+',
        metavar='NAME',
        help='指定要导入的文件名（不含 .yml，如 curriculum）'
    )
    group.add_argument(
        '--all',
        action='store_true',
        help='导入 data/trees/ 目录下的所有 YAML 文件'
    )
    group.add_argument(
        '--validate',
        nargs='*',
        metavar='NAME',
        help='仅校验 YAML 文件格式，不写入数据库。不加名称则校验所有文件。'
    )
    parser.add_argument(
        '--parent',
        type=int,
        help='把导入的节点挂到这个已有节点下（默认作为根节点导入）'
    )

    return parser.parse_args()


def run_validate(tree_names):
    """
    仅做 schema 校验，不连接数据库

    Args:
        tree_names: 文件名列表，None 或 [] 表示全部
    """
    print("=" * 60)
    print("YAML 文件 Schema 校验")
    print("=" * 60)

    yaml_files = find_yaml_files(tree_names if tree_names else None)
    if not yaml_files:
        print("没有找到任何 YAML 文件")
        return

    print(f"校验 {len(yaml_files)} 个文件:\n")

    all_passed = True
    for name, yaml_path in yaml_files:
        errors = TreeImportService.validate_yaml(yaml_path)
        if errors:
            all_passed = False
            print(f"✗ {name} ({os.path.basename(yaml_path)})")
            for msg in errors:
                print(msg)
        else:
            print(f"✓ {name} ({os.path.basename(yaml_path)})")

    print()
    if all_passed:
        print("所有文件校验通过 ✓")
    else:
        print("部分文件存在错误，请修复后再导入 ✗")
        sys.exit(1)


def main():
    """主函数"""
    args = parse_args()
    logging.basicConfig(level=config.get_log_level(), format='%(levelname)s %(name)s: %(message)s')

    # --validate 模式：不需要数据库
    if args.validate is not None:
        run_validate(args.validate)
        return

    print("=" * 60)
    print("树数据导入")
    print("=" * 60)

    # 1. 查找 YAML 文件
    if args.all:
        yaml_files = find_yaml_files()
        print("模式: 导入全部")
    else:
        yaml_files = find_yaml_files(args.trees)
        print(f"模式: 导入指定文件 {args.trees}")

    if not yaml_files:
        print("\n没有找到任何 YAML 文件")
        return

    print(f"找到 {len(yaml_files)} 个 YAML 文件:")
    for name, path in yaml_files:
        print(f"  • {name}: {path}")
    print()

    # 2. 初始化数据库
    print("初始化数据库连接...")
    db = Database()
    if not db.test_connection():
        print("\n数据库连接失败，请检查 .env 配置")
        return

    if not db.create_tables():
        print("\n数据表创建失败，程序终止")
        return
    print()

    # 3. 导入每个文件（每个文件一个事务）
    session = db.get_session()
    service = TreeImportService(session)

    success_count = 0
    fail_count = 0

    for idx, (name, yaml_path) in enumerate(yaml_files, 1):
        print(f"\n[{idx}/{len(yaml_files)}] 导入 {name}")
        print("-" * 60)

        try:
            stats = service.import_from_yaml(yaml_path, parent_id=args.parent)
            print(f"✓ {stats['tree']}: 新建 {stats['created']} 个节点，已存在 {stats['existing']} 个")
            success_count += 1
        except (TreeError, ValueError, KeyError) as e:
            print(f"✗ 导入 {name} 失败: {e}")
            fail_count += 1

    # 4. 关闭会话
    session.close()

    # 5. 汇总
    print("\n" + "=" * 60)
    print(f"导入完成！成功: {success_count}, 失败: {fail_count}")
    print("=" * 60)
    if fail_count:
        sys.exit(1)


if __name__ == "__main__":
    main()
