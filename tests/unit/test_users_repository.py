from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from facilitator.users import repository as repo


@pytest.fixture()
def db(monkeypatch):
    client = MagicMock()
    monkeypatch.setattr(repo, "get_service_supabase", lambda: client)
    return client


def _lookup(db):
    return db.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value


def test_existing_user_is_returned(db):
    _lookup(db).data = [{"id": "u1", "wallet": "0xabc"}]
    assert repo.get_or_create_user("0xABC")["id"] == "u1"
    db.table.return_value.select.return_value.eq.assert_called_with("wallet", "0xabc")
    db.table.return_value.insert.assert_not_called()


def test_first_login_creates_user(db):
    _lookup(db).data = []
    db.table.return_value.insert.return_value.execute.return_value.data = [{"id": "u2", "wallet": "0xabc"}]
    assert repo.get_or_create_user("0xAbC")["id"] == "u2"
    db.table.return_value.insert.assert_called_once_with({"wallet": "0xabc", "name": None})


def test_concurrent_creation_falls_back_to_lookup(db):
    # Premier lookup vide, insert en doublon (23505), second lookup trouve la ligne
    _lookup(db).data = []

    def second_lookup(*args, **kwargs):
        _lookup(db).data = [{"id": "u3", "wallet": "0xabc"}]
        raise APIError({"message": "dup", "code": "23505"})

    db.table.return_value.insert.return_value.execute.side_effect = second_lookup
    assert repo.get_or_create_user("0xabc")["id"] == "u3"


def test_other_insert_errors_propagate(db):
    _lookup(db).data = []
    db.table.return_value.insert.return_value.execute.side_effect = APIError({"message": "boom", "code": "42501"})
    with pytest.raises(APIError):
        repo.get_or_create_user("0xabc")
