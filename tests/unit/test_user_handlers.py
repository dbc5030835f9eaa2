"""Test the built-in user commands, the user_list projection and user queries."""

import pytest

from eventcore.core.enums import ErrorCode
from eventcore.domain.messages import Command, CommandMetadata, Query
from eventcore.handlers.users import USER_LIST


def _create(aggregate_id="user-1", email="a@b.com", name="A", **meta):
    return Command("CreateUser", aggregate_id, "User", {"email": email, "name": name},
                   CommandMetadata(**meta))


class TestUserCommands:
    async def test_create_user(self, catalog_engine):
        result = await catalog_engine.execute_command(_create("u-7"))
        assert result.success
        assert result.version == 1
        [event] = result.events
        assert event.type == "UserCreated"
        assert event.data == {"user_id": "u-7", "email": "a@b.com", "name": "A"}

    @pytest.mark.parametrize("email,name", [("", "A"), ("a@b.com", ""), ("not-an-email", "A")])
    async def test_create_user_validation(self, catalog_engine, email, name):
        result = await catalog_engine.execute_command(_create(email=email, name=name))
        assert result.error_code == ErrorCode.VALIDATION_FAILED

    async def test_create_twice_conflicts(self, catalog_engine):
        await catalog_engine.execute_command(_create())
        again = await catalog_engine.execute_command(_create())
        assert again.error_code == ErrorCode.CONCURRENCY_CONFLICT

    async def test_update_and_delete(self, catalog_engine):
        await catalog_engine.execute_command(_create())
        updated = await catalog_engine.execute_command(
            Command("UpdateUser", "user-1", "User", {"name": "Ann"})
        )
        assert updated.version == 2
        deleted = await catalog_engine.execute_command(Command("DeleteUser", "user-1", "User"))
        assert deleted.version == 3
        again = await catalog_engine.execute_command(Command("DeleteUser", "user-1", "User"))
        assert again.error_code == ErrorCode.NOT_FOUND

    async def test_update_unknown_user(self, catalog_engine):
        result = await catalog_engine.execute_command(
            Command("UpdateUser", "ghost", "User", {"name": "x"})
        )
        assert result.error_code == ErrorCode.NOT_FOUND

    async def test_update_requires_a_field(self, catalog_engine):
        await catalog_engine.execute_command(_create())
        result = await catalog_engine.execute_command(Command("UpdateUser", "user-1", "User"))
        assert result.error_code == ErrorCode.VALIDATION_FAILED

    async def test_causation_and_correlation(self, catalog_engine):
        command = _create(correlation_id="req-9", user_id="admin")
        result = await catalog_engine.execute_command(command)
        metadata = result.events[0].metadata
        assert metadata.causation_id == command.id
        assert metadata.correlation_id == "req-9"
        assert metadata.user_id == "admin"


class TestUserListProjection:
    async def test_folds_lifecycle(self, catalog_engine):
        await catalog_engine.execute_command(_create("u-1", name="Bea"))
        await catalog_engine.execute_command(_create("u-2", email="c@d.com", name="Al"))
        await catalog_engine.execute_command(
            Command("UpdateUser", "u-1", "User", {"email": "new@b.com"})
        )
        await catalog_engine.execute_command(Command("DeleteUser", "u-2", "User"))
        await catalog_engine.drain()

        users = catalog_engine.get_projection(USER_LIST).data["users"]
        assert list(users) == ["u-1"]
        assert users["u-1"]["email"] == "new@b.com"
        assert users["u-1"]["name"] == "Bea"


class TestUserQueries:
    async def test_get_user(self, catalog_engine):
        await catalog_engine.execute_command(_create())
        await catalog_engine.drain()
        result = await catalog_engine.execute_query(Query("GetUser", {"user_id": "user-1"}))
        assert result.success
        assert result.data["email"] == "a@b.com"
        assert result.metadata.version == 1

    async def test_get_missing_user(self, catalog_engine):
        result = await catalog_engine.execute_query(Query("GetUser", {"user_id": "nobody"}))
        assert result.error_code == ErrorCode.NOT_FOUND

    async def test_list_users_sorted_and_limited(self, catalog_engine):
        for user_id, name in [("u-1", "Cy"), ("u-2", "Al"), ("u-3", "Bo")]:
            await catalog_engine.execute_command(_create(user_id, email=f"{user_id}@x.io", name=name))
        await catalog_engine.drain()

        everyone = await catalog_engine.execute_query(Query("ListUsers"))
        assert [u["name"] for u in everyone.data] == ["Al", "Bo", "Cy"]
        first_two = await catalog_engine.execute_query(Query("ListUsers", {"limit": 2}))
        assert [u["name"] for u in first_two.data] == ["Al", "Bo"]
