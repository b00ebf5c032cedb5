"""Shared fixtures for tree index tests."""

import pytest

from database import Database
from services import HierarchyService, IndexStrategy, TreeEvents
from utils import ChildTypeRules, RetryPolicy


CURRICULUM_RULES = ChildTypeRules.chain("Root", "Stage", "Grade", "Semester", "Subject")

# 分类可以任意嵌套，用于移动 / 删除测试
CATEGORY_RULES = ChildTypeRules(["Category"], {"Category": ["Category", "Topic"], "Topic": []})


@pytest.fixture
def db():
    """In-memory SQLite database with all tables created."""
    database = Database("sqlite://", echo=False)
    assert database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def session(db):
    s = db.get_session()
    yield s
    s.close()


@pytest.fixture
def events():
    return TreeEvents()


def make_service(session, tree, rules, strategy, events=None):
    return HierarchyService(
        session,
        tree,
        rules,
        strategy,
        events=events,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0),
        sleep_func=lambda _delay: None,
    )


@pytest.fixture
def curriculum(session, events):
    """Curriculum tree: Root → Stage → Grade → Semester → Subject, path + closure."""
    return make_service(session, "curriculum", CURRICULUM_RULES, IndexStrategy.BOTH, events)


@pytest.fixture(params=[IndexStrategy.PATH, IndexStrategy.CLOSURE, IndexStrategy.BOTH],
                ids=lambda s: s.value)
def categories(request, session, events):
    """Self-nesting category tree, once per index strategy."""
    return make_service(session, "question_bank", CATEGORY_RULES, request.param, events)


@pytest.fixture
def chain(categories):
    """Linear chain 1 → 2 → 3 → 4."""
    ids = [categories.attach(None, "Category", "C1", "C1")]
    for n in (2, 3, 4):
        ids.append(categories.attach(ids[-1], "Category", f"C{n}", f"C{n}"))
    return ids
