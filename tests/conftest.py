"""
Shared fixtures: a table-aware Supabase double and auth overrides.
"""

import os

import pytest
from unittest.mock import MagicMock, patch

# Set test environment before the app is imported
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("NEXT_PUBLIC_SUPABASE_URL", None)

from riskmate import rbac
from riskmate.executive_cache import invalidate_executive_cache
from riskmate.org_settings_loader import invalidate_cache as invalidate_settings_cache
from riskmate.rbac import AuthContext, get_auth_context

QUERY_METHODS = (
    "select", "insert", "update", "delete", "upsert",
    "eq", "neq", "in_", "is_", "or_", "like", "ilike",
    "lt", "lte", "gt", "gte", "order", "limit", "range", "single",
)


def make_result(data=None, count=None):
    return MagicMock(data=[] if data is None else data, count=count)


def make_query(data=None, count=None):
    """A query builder whose filter methods chain back to itself."""
    query = MagicMock()
    for name in QUERY_METHODS:
        getattr(query, name).return_value = query
    query.not_ = query
    query.execute.return_value = make_result(data, count)
    return query


class FakeSupabase:
    """
    One chaining query mock per table. set() fixes a table's result;
    set_results() returns results in order, repeating the last one.
    """

    def __init__(self):
        self.client = MagicMock()
        self.tables = {}
        self.client.table.side_effect = self.table

    def table(self, name):
        if name not in self.tables:
            self.tables[name] = make_query()
        return self.tables[name]

    def set(self, name, data=None, count=None):
        query = self.table(name)
        query.execute.side_effect = None
        query.execute.return_value = make_result(data, count)
        return query

    def set_results(self, name, *results):
        query = self.table(name)
        queue = [make_result(r) for r in results]

        def execute():
            return queue.pop(0) if len(queue) > 1 else queue[0]

        query.execute.side_effect = execute
        return query

    def inserted(self, name):
        """Payloads passed to insert() on a table."""
        return [c.args[0] for c in self.table(name).insert.call_args_list]


def make_auth(role="owner", user_id="user-1", org_id="org-1"):
    return AuthContext(
        user_id=user_id,
        email=f"{role}@example.com",
        organization_id=org_id,
        role=role,
        full_name="Test User",
        request_id="req-test",
    )


@pytest.fixture(autouse=True)
def reset_process_state():
    """Caches and rate-limit counters are process-wide."""
    invalidate_executive_cache()
    invalidate_settings_cache()
    rbac._rate_limit_cache.clear()
    yield
    rbac._rate_limit_cache.clear()


@pytest.fixture
def fake_db():
    db = FakeSupabase()
    with patch("riskmate.router_utils.get_supabase", return_value=db.client), \
         patch("riskmate.rbac.get_supabase", return_value=db.client):
        yield db


@pytest.fixture
def app():
    from riskmate.main import app as fastapi_app
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app)


@pytest.fixture
def as_role(app):
    """Override authentication with a fixed AuthContext for the given role."""
    def _set(role="owner", **kwargs):
        auth = make_auth(role, **kwargs)
        app.dependency_overrides[get_auth_context] = lambda: auth
        return auth
    return _set
