"""Cache invalidation router — inbound events → stale queries + notices.

Learn: handle() does three things, in order:

1. Duplicate suppression. The signature is type + JSON(data). If it
   equals the previous message's signature and arrived less than
   dedup_window_ms later, the message is dropped. Only the last message
   is remembered; this is not a general dedup set. A payload that
   can't be serialized is never treated as a duplicate.
2. Dispatch on type through a fixed handler table. Each handler
   invalidates a known set of query keys and, for some types, raises
   a notice when a condition holds (e.g. the new ticket is assigned to
   the current user).
3. Unknown types are logged and ignored, never raised — a newer server
   may send types this client doesn't know yet.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from ticketflow.client.cache import InvalidationTarget, QueryKey, as_key
from ticketflow.client.config import ClientConfig
from ticketflow.client.notices import Notice, Notifier, log_notice
from ticketflow.events import types as ev
from ticketflow.events.envelope import Event

logger = structlog.get_logger()

TASKS = ("/api/tasks",)
ACTIVITY = ("/api/activity",)
KNOWLEDGE = ("/api/knowledge",)
TEAMS = ("/api/teams",)
MY_TEAMS = ("/api/teams/my",)
DEPARTMENTS = ("/api/departments",)
USERS = ("/api/users",)
AUTH_USER = ("/api/auth/user",)
STATS_KEYS = (("/api/stats",), ("/api/stats/agent",), ("/api/stats/manager",))


def _is_department_stats(key: QueryKey) -> bool:
    return len(key) > 2 and key[0] == "/api/departments" and key[2] == "stats"


@dataclass
class HandleResult:
    """What one handle() call did."""

    type: str
    dropped: bool = False
    invalidated: list[QueryKey] = field(default_factory=list)
    notices: list[Notice] = field(default_factory=list)


class _Effects:
    """Side-effect sink handed to handlers; records into a HandleResult."""

    def __init__(self, cache: InvalidationTarget, notify: Notifier, result: HandleResult):
        self.cache = cache
        self.notify = notify
        self.result = result

    def invalidate(self, *key, exact: bool = False) -> None:
        k = as_key(key)
        self.cache.invalidate(k, exact=exact)
        self.result.invalidated.append(k)

    def invalidate_department_stats(self) -> None:
        self.cache.invalidate_where(_is_department_stats)
        self.result.invalidated.append(("/api/departments", "*", "stats"))

    def notice(self, title: str, description: str = "", variant: str = "default") -> None:
        n = Notice(title, description, variant)
        self.notify(n)
        self.result.notices.append(n)


Handler = Callable[[dict, _Effects], None]


class InvalidationRouter:
    """Maps server push types to cache invalidations and notices."""

    def __init__(
        self,
        cache: InvalidationTarget,
        notify: Optional[Notifier] = None,
        principal: Optional[Callable[[], Optional[str]]] = None,
        config: Optional[ClientConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.notify = notify or log_notice
        self.principal = principal or (lambda: None)
        self.config = config or ClientConfig()
        self.clock = clock
        self._last: Optional[tuple[str, float]] = None

        self._handlers: dict[str, Handler] = {
            ev.CONNECTED: lambda data, fx: None,
            ev.PONG: lambda data, fx: None,
            ev.ERROR: self._server_error,
            ev.TICKET_CREATED: self._ticket_created,
            ev.TICKET_UPDATED: self._ticket_updated,
            ev.TICKET_COMMENT: self._ticket_comment,
            ev.KNOWLEDGE_CREATED: self._knowledge_created,
            ev.AI_RESPONSE: self._ai_response,
            ev.TEAM_UPDATE: self._team_update,
            ev.TEAM_CREATED: self._team_created_or_deleted,
            ev.TEAM_DELETED: self._team_created_or_deleted,
            ev.TEAM_ADMIN_GRANTED: self._team_admins,
            ev.TEAM_ADMIN_REVOKED: self._team_admins,
            ev.TEAM_TASK_ASSIGNED: self._team_task_assignment,
            ev.TEAM_TASK_ASSIGNMENT_UPDATED: self._team_task_assignment,
            ev.TEAM_TASK_ASSIGNMENT_DELETED: self._team_task_assignment,
            ev.DEPARTMENT_CREATED: self._department,
            ev.DEPARTMENT_UPDATED: self._department,
            ev.DEPARTMENT_DELETED: self._department,
            ev.USER_UPDATE: self._user_update,
            ev.SYSTEM_NOTIFICATION: self._system_notification,
        }

    @property
    def handled_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    # ─── Entry point ─────────────────────────────────────

    def handle(self, event: Event) -> HandleResult:
        result = HandleResult(event.type)

        if self._is_duplicate(event):
            logger.debug("client.duplicate_dropped", type=event.type)
            result.dropped = True
            return result

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("client.unknown_message", type=event.type)
            return result

        data = event.data if isinstance(event.data, dict) else {}
        try:
            handler(data, _Effects(self.cache, self.notify, result))
        except Exception:
            # A malformed payload must not take down the message pump
            logger.exception("client.handler_failed", type=event.type)
        return result

    def _is_duplicate(self, event: Event) -> bool:
        now_ms = self.clock() * 1000
        try:
            payload = event.data if event.data is not None else {}
            signature = f"{event.type}:{json.dumps(payload, sort_keys=True)}"
        except (TypeError, ValueError):
            return False

        last = self._last
        if last is not None and last[0] == signature and now_ms - last[1] < self.config.dedup_window_ms:
            return True
        self._last = (signature, now_ms)
        return False

    # ─── Tickets ─────────────────────────────────────────

    @staticmethod
    def _stats(fx: _Effects) -> None:
        for key in STATS_KEYS:
            fx.invalidate(*key)

    def _ticket_created(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(*TASKS)
        self._stats(fx)
        fx.invalidate(*ACTIVITY)

        team_id = data.get("assigneeTeamId")
        if team_id:
            fx.invalidate("/api/teams", team_id, "tasks")
            fx.invalidate_department_stats()

        me = self.principal()
        if me is not None and data.get("assigneeId") == me:
            fx.notice(
                "New ticket assigned",
                f"Ticket #{data.get('ticketNumber')} has been assigned to you",
            )

    def _ticket_updated(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(f"/api/tasks/{data.get('id')}")
        fx.invalidate(*TASKS)
        self._stats(fx)

        changes = data.get("changes") or {}
        team_change = changes.get("assigneeTeamId")
        old_team = team_change.get("old") if isinstance(team_change, dict) else None
        new_team = team_change.get("new") if isinstance(team_change, dict) else None
        current_team = data.get("assigneeTeamId")

        if old_team:
            fx.invalidate("/api/teams", old_team, "tasks")
        if new_team or current_team:
            fx.invalidate("/api/teams", new_team or current_team, "tasks")
        if old_team or new_team or current_team:
            fx.invalidate_department_stats()

        if changes.get("status") == "resolved":
            fx.notice(
                "Ticket resolved",
                f"Ticket #{data.get('ticketNumber')} has been resolved",
            )

    def _ticket_comment(self, data: dict, fx: _Effects) -> None:
        ticket_id = data.get("ticketId")
        fx.invalidate(f"/api/tasks/{ticket_id}/comments")
        fx.invalidate(*ACTIVITY)

        if data.get("isReply"):
            number = data.get("ticketNumber") or ticket_id
            fx.notice("New comment", f"New comment on ticket #{number}")

    def _ai_response(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(f"/api/tasks/{data.get('ticketId')}/auto-response")

        confidence = data.get("confidence")
        if isinstance(confidence, (int, float)) and confidence > self.config.ai_notice_confidence:
            fx.notice(
                "AI response generated",
                f"High-confidence response for ticket #{data.get('ticketNumber')}",
            )

    # ─── Knowledge ───────────────────────────────────────

    def _knowledge_created(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(*KNOWLEDGE)
        if data.get("sourceTicketId"):
            fx.notice(
                "Knowledge article created",
                "AI has created a new knowledge article from a resolved ticket",
            )

    # ─── Teams + departments ─────────────────────────────

    def _team_update(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(*TEAMS)
        fx.invalidate(*MY_TEAMS)

        team_id = data.get("teamId")
        if team_id:
            fx.invalidate("/api/teams", team_id)
            for sub in ("members", "admins", "permissions", "tasks"):
                fx.invalidate("/api/teams", team_id, sub)

        department_id = data.get("departmentId")
        if department_id:
            fx.invalidate("/api/departments", department_id, "teams")
            fx.invalidate("/api/departments", department_id, "stats")
            old_department = data.get("oldDepartmentId")
            if old_department:
                fx.invalidate("/api/departments", old_department, "teams")
                fx.invalidate("/api/departments", old_department, "stats")

    def _team_created_or_deleted(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(*TEAMS)
        fx.invalidate(*MY_TEAMS)
        department_id = data.get("departmentId")
        if department_id:
            fx.invalidate("/api/departments", department_id, "teams")
            fx.invalidate("/api/departments", department_id, "stats")

    def _team_admins(self, data: dict, fx: _Effects) -> None:
        team_id = data.get("teamId")
        if team_id:
            for sub in ("admins", "members", "permissions"):
                fx.invalidate("/api/teams", team_id, sub)

    def _team_task_assignment(self, data: dict, fx: _Effects) -> None:
        team_id, task_id = data.get("teamId"), data.get("taskId")
        if team_id and task_id:
            fx.invalidate("/api/teams", team_id, "tasks", task_id, "assignments")
            fx.invalidate("/api/teams", team_id, "tasks")

    def _department(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(*DEPARTMENTS)
        department_id = data.get("id")
        if department_id:
            fx.invalidate("/api/departments", department_id)
            fx.invalidate("/api/departments", department_id, "teams")
            fx.invalidate("/api/departments", department_id, "stats")

    # ─── Users + system ──────────────────────────────────

    def _user_update(self, data: dict, fx: _Effects) -> None:
        fx.invalidate(*USERS)
        fx.invalidate(*AUTH_USER)

    def _system_notification(self, data: dict, fx: _Effects) -> None:
        fx.notice(
            data.get("title") or "System notification",
            data.get("message") or "",
            data.get("variant") or "default",
        )

    def _server_error(self, data: dict, fx: _Effects) -> None:
        logger.warning("client.server_error", message=data.get("message"))


def describe(result: HandleResult) -> dict[str, Any]:
    """Loggable summary of a HandleResult."""
    return {
        "type": result.type,
        "dropped": result.dropped,
        "invalidated": [list(k) for k in result.invalidated],
        "notices": [n.title for n in result.notices],
    }
