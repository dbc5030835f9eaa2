"""User aggregate: commands, the ``user_list`` projection and user queries."""

from __future__ import annotations

from typing import Any

from eventcore.core.errors import NotFound, StreamNotFound
from eventcore.cqrs.queries import CachePolicy
from eventcore.domain.events import DomainEvent, NewEvent
from eventcore.domain.messages import Command, Query, QueryResult

AGGREGATE_TYPE = "User"
USER_LIST = "user_list"

USER_FIELDS = ("email", "name")


def _event(command: Command, event_type: str, data: dict[str, Any]) -> NewEvent:
    return NewEvent(
        type=event_type,
        data=data,
        correlation_id=command.metadata.correlation_id,
        causation_id=command.id,
        user_id=command.metadata.user_id,
        session_id=command.metadata.session_id,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def validate_create_user(command: Command) -> bool:
    email = command.data.get("email")
    name = command.data.get("name")
    return bool(email) and bool(name) and "@" in str(email)


def validate_update_user(command: Command) -> bool:
    return any(command.data.get(f) for f in USER_FIELDS)


async def create_user(command: Command, store: Any) -> list[DomainEvent]:
    data = {"user_id": command.aggregate_id}
    data.update({f: command.data[f] for f in USER_FIELDS})
    # A user id can only be created once.
    expected = command.metadata.expected_version
    return await store.append_events(
        command.aggregate_id,
        AGGREGATE_TYPE,
        [_event(command, "UserCreated", data)],
        expected_version=0 if expected is None else expected,
    )


async def _require_user(store: Any, user_id: str) -> int:
    stream = await store.get_event_stream(user_id)
    if stream is None or stream.aggregate_type != AGGREGATE_TYPE:
        raise StreamNotFound(f"User {user_id} does not exist")
    state = await store.load_aggregate(user_id)
    if state and state.get("last_event_type") == "UserDeleted":
        raise StreamNotFound(f"User {user_id} was deleted")
    return stream.version


async def update_user(command: Command, store: Any) -> list[DomainEvent]:
    current = await _require_user(store, command.aggregate_id)
    changes = {f: command.data[f] for f in USER_FIELDS if command.data.get(f)}
    expected = command.metadata.expected_version
    return await store.append_events(
        command.aggregate_id,
        AGGREGATE_TYPE,
        [_event(command, "UserUpdated", {"user_id": command.aggregate_id, **changes})],
        expected_version=current if expected is None else expected,
    )


async def delete_user(command: Command, store: Any) -> list[DomainEvent]:
    current = await _require_user(store, command.aggregate_id)
    expected = command.metadata.expected_version
    return await store.append_events(
        command.aggregate_id,
        AGGREGATE_TYPE,
        [_event(command, "UserDeleted", {"user_id": command.aggregate_id})],
        expected_version=current if expected is None else expected,
    )


# ---------------------------------------------------------------------------
# user_list folds
# ---------------------------------------------------------------------------

def fold_user_created(data: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
    users = data.setdefault("users", {})
    users[event.aggregate_id] = {
        "id": event.aggregate_id,
        "email": event.data.get("email"),
        "name": event.data.get("name"),
        "created_at": event.metadata.timestamp.isoformat(),
    }
    return data


def fold_user_updated(data: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
    user = data.setdefault("users", {}).get(event.aggregate_id)
    if user is not None:
        user.update({f: event.data[f] for f in USER_FIELDS if f in event.data})
        user["updated_at"] = event.metadata.timestamp.isoformat()
    return data


def fold_user_deleted(data: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
    data.setdefault("users", {}).pop(event.aggregate_id, None)
    return data


USER_LIST_FOLDS = {
    "UserCreated": fold_user_created,
    "UserUpdated": fold_user_updated,
    "UserDeleted": fold_user_deleted,
}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_user(query: Query, projections: Any) -> QueryResult:
    user_id = query.parameters.get("user_id")
    projection = projections.get_projection(USER_LIST)
    user = projection.data.get("users", {}).get(user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return QueryResult.ok(
        user, version=projection.version, last_modified=projection.last_updated,
    )


async def list_users(query: Query, projections: Any) -> QueryResult:
    projection = projections.get_projection(USER_LIST)
    users = sorted(
        projection.data.get("users", {}).values(),
        key=lambda u: (u.get("name") or "", u["id"]),
    )
    limit = query.parameters.get("limit")
    if limit is not None:
        users = users[: int(limit)]
    return QueryResult.ok(
        users, version=projection.version, last_modified=projection.last_updated,
    )


async def register(engine: Any) -> None:
    engine.register_command_handler(
        "CreateUser", create_user, name="CreateUserHandler", validate=validate_create_user,
    )
    engine.register_command_handler(
        "UpdateUser", update_user, name="UpdateUserHandler", validate=validate_update_user,
    )
    engine.register_command_handler("DeleteUser", delete_user, name="DeleteUserHandler")

    await engine.create_projection(
        USER_LIST, "User List", "list", list(USER_LIST_FOLDS), folds=USER_LIST_FOLDS,
    )

    ttl = engine.settings.queries.cache_ttl
    cache = CachePolicy(enabled=True, ttl=ttl, invalidation_pattern=USER_LIST)
    engine.register_query_handler("GetUser", get_user, name="GetUserHandler", caching=cache)
    engine.register_query_handler("ListUsers", list_users, name="ListUsersHandler", caching=cache)
