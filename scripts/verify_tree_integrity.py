#!/usr/bin/env python3
"""
树索引完整性检查脚本
对照节点表的父指针检查物化路径和闭包表，发现问题时以退出码 1 结束
（适合放在定时任务 / CI 中）
"""
import sys
import os
import argparse
import logging

# 添加 src 目录到 Python 路径
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import config
from database import Database
from services import IntegrityService, load_hierarchies


def parse_args():
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        description='检查树的物化路径 / 闭包表与父指针是否一致'
    )
    parser.add_argument(
        'trees',
        nargs='*',
        metavar='TREE',
        help='要检查的树（不指定则检查 hierarchies.yml 中的全部树）'
    )
    return parser.parse_args()


def main():
    """主函数"""
    args = parse_args()
    logging.basicConfig(level=config.get_log_level(), format='%(levelname)s %(name)s: %(message)s')

    hierarchies = load_hierarchies()
    names = args.trees or sorted(hierarchies)
    unknown = [name for name in names if name not in hierarchies]
    if unknown:
        print(f"✗ 未配置的树: {', '.join(unknown)}")
        sys.exit(1)

    db = Database()
    if not db.test_connection():
        print("\n数据库连接失败，请检查 .env 配置")
        sys.exit(1)
    session = db.get_session()

    total_issues = 0
    for name in names:
        hierarchy = hierarchies[name]
        print(f"\n{'='*70}")
        print(f"完整性检查: {name}（索引策略: {hierarchy.strategy.value}）")
        print(f"{'='*70}")

        report = IntegrityService(session, name, hierarchy.strategy).check()
        print(f"检查节点数: {report.checked}")
        if report.is_valid:
            print("✓ 索引一致")
            continue

        total_issues += len(report.issues)
        print(f"✗ 发现 {len(report.issues)} 处不一致:")
        for issue in report.issues:
            print(f"  {issue}")
        print(f"  → 建议: 确认原因后运行 ikhtibar-tree check {name} --repair")

    session.close()

    print(f"\n{'='*70}")
    if total_issues:
        print(f"共发现 {total_issues} 处不一致 ✗")
        sys.exit(1)
    print("所有树索引一致 ✓")


if __name__ == "__main__":
    main()
