"""Admin bootstrap script."""

import pytest

from scripts.bootstrap_admin import bootstrap_admin

PASSWORD = "Adm1n!pass"


class TestBootstrapAdmin:
    async def test_creates_admin(self, runtime):
        result = await bootstrap_admin("Head@School.test", PASSWORD, "Head", runtime=runtime)
        assert result["status"] == "created"
        user = runtime.store.get_user(result["user_id"])
        assert user.email == "head@school.test"
        assert user.role == "admin"
        assert (await runtime.auth.login("head@school.test", PASSWORD)).user.id == user.id

    async def test_promotes_existing_user(self, runtime):
        registered = await runtime.auth.register("t@school.test", "Aa1!aaaa", "T")
        result = await bootstrap_admin("t@school.test", PASSWORD, runtime=runtime)
        assert result["status"] == "promoted"
        assert runtime.store.get_user(registered.user.id).role == "admin"
        # promotion revokes sessions minted for the old role
        assert runtime.store.get_session(registered.tokens.refresh_token) is None

    async def test_already_admin(self, runtime):
        await bootstrap_admin("head@school.test", PASSWORD, runtime=runtime)
        result = await bootstrap_admin("head@school.test", PASSWORD, runtime=runtime)
        assert result["status"] == "already_admin"

    @pytest.mark.parametrize("existing", [False, True])
    async def test_dry_run_changes_nothing(self, runtime, existing):
        if existing:
            runtime.store.create_user("t@school.test", "T", role="teacher")
        result = await bootstrap_admin("t@school.test", PASSWORD, dry_run=True, runtime=runtime)
        assert result["status"] == "dry_run"
        user = runtime.store.get_user_by_email("t@school.test")
        assert (user.role if user else None) == ("teacher" if existing else None)
