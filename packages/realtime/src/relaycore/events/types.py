"""Event name constants.

Learn: Centralizing event names as constants prevents typos and makes it
easy to discover everything the hub can push. Hub events keep the server's
PascalCase method names; raw channel events keep their snake_case types.
"""

# ─── Connection lifecycle ────────────────────────────────

CONNECTION = "connection"

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_RECONNECTED = "reconnected"
STATUS_ERROR = "error"
STATUS_FAILED = "failed"

# ─── Template analytics hub pushes ───────────────────────

DASHBOARD_UPDATE = "DashboardUpdate"
PERFORMANCE_UPDATE = "PerformanceUpdate"
AB_TEST_UPDATE = "ABTestUpdate"
NEW_ALERT = "NewAlert"
REAL_TIME_UPDATE = "RealTimeUpdate"
ERROR = "Error"

# ─── Query status hub pushes ─────────────────────────────

CONNECTION_CONFIRMED = "ConnectionConfirmed"
QUERY_STATUS_UPDATE = "QueryStatusUpdate"
JOINED_QUERY_GROUP = "JoinedQueryGroup"
LEFT_QUERY_GROUP = "LeftQueryGroup"
USER_NOTIFICATION = "UserNotification"
SYSTEM_NOTIFICATION = "SystemNotification"

# ─── Raw channel events ──────────────────────────────────

QUERY_PROGRESS = "query_progress"
SYSTEM_METRICS = "system_metrics"
COST_ALERT = "cost_alert"
USER_ACTIVITY = "user_activity"
DASHBOARD_UPDATE_CHANNEL = "dashboard_update"

HUB_EVENTS = (
    DASHBOARD_UPDATE,
    PERFORMANCE_UPDATE,
    AB_TEST_UPDATE,
    NEW_ALERT,
    REAL_TIME_UPDATE,
    ERROR,
    CONNECTION_CONFIRMED,
    QUERY_STATUS_UPDATE,
    JOINED_QUERY_GROUP,
    LEFT_QUERY_GROUP,
    USER_NOTIFICATION,
    SYSTEM_NOTIFICATION,
)

CHANNEL_EVENTS = (
    QUERY_PROGRESS,
    SYSTEM_METRICS,
    COST_ALERT,
    USER_ACTIVITY,
    DASHBOARD_UPDATE_CHANNEL,
)

# ─── Hub methods (client → server) ───────────────────────

SUBSCRIBE_TO_PERFORMANCE_UPDATES = "SubscribeToPerformanceUpdates"
SUBSCRIBE_TO_AB_TEST_UPDATES = "SubscribeToABTestUpdates"
SUBSCRIBE_TO_ALERTS = "SubscribeToAlerts"
GET_REAL_TIME_DASHBOARD = "GetRealTimeDashboard"
GET_TEMPLATE_PERFORMANCE = "GetTemplatePerformance"
JOIN_QUERY_GROUP = "JoinQueryGroup"
LEAVE_QUERY_GROUP = "LeaveQueryGroup"
