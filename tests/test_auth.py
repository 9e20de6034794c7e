import pytest
from fastapi import HTTPException

from app.core.dependencies import is_super_user
from app.modules.auth.service import AuthService, clear_auth_cache


class _User:
    def __init__(self, user_id, app_metadata=None):
        self.id = user_id
        self.email = f"{user_id}@example.test"
        self.user_metadata = {}
        self.app_metadata = app_metadata or {}


@pytest.fixture(autouse=True)
def fresh_cache():
    clear_auth_cache()
    yield
    clear_auth_cache()


def test_token_resolves_to_the_caller_and_is_cached(supabase):
    supabase.auth.users["token-1"] = _User("user-1", {"type": "super_user"})
    service = AuthService(supabase)

    first = service.get_current_user("token-1")
    del supabase.auth.users["token-1"]
    second = service.get_current_user("token-1")

    assert first == second
    assert first["id"] == "user-1"
    assert is_super_user(first)


def test_invalid_token_is_unauthorized(supabase):
    with pytest.raises(HTTPException) as exc:
        AuthService(supabase).get_current_user("garbage")

    assert exc.value.status_code == 401


def test_regular_users_are_not_super_users():
    assert not is_super_user({"id": "user-1", "app_metadata": {}})
    assert not is_super_user({"id": "user-1"})
