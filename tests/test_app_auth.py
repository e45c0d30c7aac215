"""Hard-coded app account login"""

import pytest

from app_auth import verify_app_login
from verification_types import AppIdentity, Outcome


class TestAppLogin:

    @pytest.mark.parametrize("username,subject,role", [
        ("admin", "app_admin", "admin"),
        ("user", "app_user", "user"),
        ("user1", "app_user1", "user"),
    ])
    def test_known_accounts(self, username, subject, role):
        result = verify_app_login({"username": username, "password": username})

        assert result.ok
        assert result.data["user"] == AppIdentity(subject=subject, username=username, role=role)

    @pytest.mark.parametrize("credentials", [
        {"username": "admin", "password": "wrong"},
        {"username": "nobody", "password": "nobody"},
        {"username": "admin", "password": "admin "},
    ])
    def test_bad_credentials_are_one_generic_failure(self, credentials):
        result = verify_app_login(credentials)
        assert result.outcome is Outcome.INVALID
        assert result.reason == "invalid_credentials"

    @pytest.mark.parametrize("credentials", [{}, {"username": "admin"}, {"username": 1, "password": 2}, "admin:admin"])
    def test_malformed(self, credentials):
        assert verify_app_login(credentials).outcome is Outcome.MALFORMED

    def test_custom_account_table(self):
        accounts = {"ops": ("hunter2", "app_ops", "admin")}
        assert verify_app_login({"username": "ops", "password": "hunter2"}, accounts).ok
        assert not verify_app_login({"username": "admin", "password": "admin"}, accounts).ok
