"""Named operations exposed to protocol clients, plus static resources/prompts.

Each operation is a coroutine taking the caller's ``UpstreamApi`` handle and
its arguments. Mutating operations are flagged so read-only mode can hide and
refuse them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from authgate.core.errors import InvalidOperationArguments, OperationError
from authgate.upstream.client import UpstreamApi

logger = logging.getLogger(__name__)

Handler = Callable[[UpstreamApi, dict], Awaitable[Any]]


@dataclass(frozen=True)
class Operation:
    name: str
    description: str
    handler: Handler
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    mutating: bool = False

    def describe(self) -> dict:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class OperationRegistry:
    def __init__(self):
        self._operations: dict[str, Operation] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._operations

    def get(self, name: str) -> Operation | None:
        return self._operations.get(name)

    def add(self, operation: Operation) -> None:
        if operation.name in self._operations:
            raise ValueError(f"Operation already registered: {operation.name}")
        self._operations[operation.name] = operation

    def register(self, name: str, description: str, *, properties: dict | None = None,
                 required: list[str] | None = None, mutating: bool = False):
        schema: dict = {"type": "object", "properties": properties or {}}
        if required:
            schema["required"] = required

        def decorator(fn: Handler) -> Handler:
            self.add(Operation(name, description, fn, schema, mutating))
            return fn

        return decorator

    def catalog(self, read_only: bool = False) -> list[dict]:
        return [op.describe() for op in self._operations.values() if not (read_only and op.mutating)]

    def is_allowed(self, name: str, read_only: bool) -> bool:
        op = self._operations.get(name)
        return not (read_only and op is not None and op.mutating)

    async def execute(self, api: UpstreamApi, name: str, args: dict) -> Any:
        op = self._operations.get(name)
        if op is None:
            raise OperationError(f"Operation not found: {name}")
        missing = [k for k in op.input_schema.get("required", []) if args.get(k) is None]
        if missing:
            raise InvalidOperationArguments(f"Missing required argument(s): {', '.join(missing)}")
        logger.debug("Executing operation: %s", name)
        return await op.handler(api, args)


registry = OperationRegistry()


@registry.register("get_current_user", "Get the currently authenticated user")
async def get_current_user(api: UpstreamApi, args: dict):
    return await api.get_json("/users/me")


@registry.register(
    "get_users",
    "List users, optionally filtered by active status or department",
    properties={
        "active": {"type": "boolean", "description": "Only active users"},
        "department_ids": {"type": "array", "items": {"type": "integer"}},
    },
)
async def get_users(api: UpstreamApi, args: dict):
    params = {}
    if args.get("active") is not None:
        params["active"] = str(bool(args["active"])).lower()
    if args.get("department_ids"):
        params["department_ids"] = ",".join(str(i) for i in args["department_ids"])
    return await api.get_json("/users", params=params or None)


@registry.register(
    "get_user",
    "Get a single user by id",
    properties={"user_id": {"type": "integer"}},
    required=["user_id"],
)
async def get_user(api: UpstreamApi, args: dict):
    return await api.get_json(f"/users/{int(args['user_id'])}")


@registry.register("get_departments", "List departments")
async def get_departments(api: UpstreamApi, args: dict):
    return await api.get_json("/departments")


@registry.register("get_locations", "List locations")
async def get_locations(api: UpstreamApi, args: dict):
    return await api.get_json("/locations")


@registry.register(
    "update_user",
    "Update fields on a user",
    properties={"user_id": {"type": "integer"}, "fields": {"type": "object"}},
    required=["user_id", "fields"],
    mutating=True,
)
async def update_user(api: UpstreamApi, args: dict):
    return await api.request("PUT", f"/users/{int(args['user_id'])}", json=args["fields"])


@registry.register(
    "create_leave_request",
    "Create a leave request for a user",
    properties={
        "user_id": {"type": "integer"},
        "start": {"type": "string", "description": "YYYY-MM-DD"},
        "finish": {"type": "string", "description": "YYYY-MM-DD"},
        "leave_type": {"type": "string"},
        "reason": {"type": "string"},
    },
    required=["user_id", "start", "finish", "leave_type"],
    mutating=True,
)
async def create_leave_request(api: UpstreamApi, args: dict):
    body = {k: args[k] for k in ("user_id", "start", "finish", "leave_type", "reason") if k in args}
    return await api.request("POST", "/leave", json=body)


# --- resources ---------------------------------------------------------------

RESOURCES = [
    {
        "uri": "upstream://user/current",
        "name": "Current User",
        "description": "Information about the currently authenticated user",
        "mimeType": "application/json",
    },
    {
        "uri": "upstream://organization/info",
        "name": "Organization Info",
        "description": "Departments and locations of the organization",
        "mimeType": "application/json",
    },
]


async def read_resource(uri: str, api: UpstreamApi, identity: dict) -> Any:
    if uri == "upstream://user/current":
        return identity
    if uri == "upstream://organization/info":
        departments = await api.get_json("/departments")
        locations = await api.get_json("/locations")
        return {
            "departments": departments,
            "locations": locations,
            "departmentCount": len(departments or []),
            "locationCount": len(locations or []),
        }
    raise InvalidOperationArguments(f"Unknown resource: {uri}")


# --- prompts -----------------------------------------------------------------

PROMPTS = [
    {
        "name": "schedule_overview",
        "description": "Get an overview of the schedule for a specific date range",
        "arguments": [
            {"name": "from", "description": "Start date (YYYY-MM-DD)", "required": True},
            {"name": "to", "description": "End date (YYYY-MM-DD)", "required": True},
        ],
    },
    {
        "name": "team_availability",
        "description": "Check team availability including leave and scheduled shifts",
        "arguments": [
            {"name": "date", "description": "Date to check (YYYY-MM-DD)", "required": True},
            {"name": "department_id", "description": "Department ID to filter by", "required": False},
        ],
    },
]


def render_prompt(name: str, args: dict) -> dict:
    if name == "schedule_overview":
        text = (
            f"Please provide an overview of the schedule from {args.get('from') or '[start date]'} "
            f"to {args.get('to') or '[end date]'}. Include:\n"
            "1. Total scheduled shifts\n"
            "2. Coverage by department\n"
            "3. Any gaps or understaffing\n"
            "4. Pending leave requests that might affect coverage"
        )
        description = "Get schedule overview"
    elif name == "team_availability":
        where = f" in department {args['department_id']}" if args.get("department_id") else ""
        text = (
            f"Check team availability for {args.get('date') or '[date]'}{where}. Show:\n"
            "1. Who is scheduled to work\n"
            "2. Who is on leave\n"
            "3. Who is available but not scheduled"
        )
        description = "Check team availability"
    else:
        raise InvalidOperationArguments(f"Unknown prompt: {name}")
    return {
        "description": description,
        "messages": [{"role": "user", "content": {"type": "text", "text": text}}],
    }
