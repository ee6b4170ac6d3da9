"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover every message that crosses the WebSocket.
The server → client set is a fixed enumeration; the client router
must tolerate anything else for forward compatibility.
"""

# ─── Server → client ─────────────────────────────────────

CONNECTED = "connected"
TICKET_CREATED = "ticket:created"
TICKET_UPDATED = "ticket:updated"
TICKET_COMMENT = "ticket:comment"
KNOWLEDGE_CREATED = "knowledge:created"
AI_RESPONSE = "ai:response"
TEAM_UPDATE = "team:update"
USER_UPDATE = "user:update"
SYSTEM_NOTIFICATION = "system:notification"
PONG = "pong"
ERROR = "error"

SERVER_EVENT_TYPES = frozenset({
    CONNECTED,
    TICKET_CREATED,
    TICKET_UPDATED,
    TICKET_COMMENT,
    KNOWLEDGE_CREATED,
    AI_RESPONSE,
    TEAM_UPDATE,
    USER_UPDATE,
    SYSTEM_NOTIFICATION,
})

# ─── Emitted by older servers, still understood by the client ──

TEAM_CREATED = "team:created"
TEAM_DELETED = "team:deleted"
TEAM_ADMIN_GRANTED = "team:admin:granted"
TEAM_ADMIN_REVOKED = "team:admin:revoked"
TEAM_TASK_ASSIGNED = "team:task:assigned"
TEAM_TASK_ASSIGNMENT_UPDATED = "team:task:assignment:updated"
TEAM_TASK_ASSIGNMENT_DELETED = "team:task:assignment:deleted"
DEPARTMENT_CREATED = "department:created"
DEPARTMENT_UPDATED = "department:updated"
DEPARTMENT_DELETED = "department:deleted"

# ─── Client → server ─────────────────────────────────────

AUTH = "auth"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
PING = "ping"
