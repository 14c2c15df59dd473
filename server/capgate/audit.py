"""capgate - Audit Logging

Writes to the audit_log table. Called from the store after successful
membership, workspace and project writes, on the same cursor so the audit row
commits with the change it describes.
"""

from datetime import datetime, timezone

from .logging_config import get_logger

logger = get_logger(__name__)

SEVERITIES = ("low", "medium", "high")


def utc_timestamp() -> str:
    """Naive UTC timestamp string accepted by both SQLite and SQL Server."""
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(sep=" ", timespec="seconds")


def log_audit(
    cursor,
    workspace_id: str,
    actor_id: str,
    action: str,
    severity: str = "low",
    detail: str = None,
) -> None:
    """Insert a row into audit_log.

    Parameters:
        cursor: Cursor on the application database
        workspace_id: Workspace the change belongs to (project changes use the owning workspace)
        actor_id: User who made the change
        action: Short verb phrase, e.g. 'member.added', 'workspace.created'
        severity: One of 'low', 'medium', 'high'
        detail: Optional free-text context (truncated to 500 chars)
    """
    try:
        if severity not in SEVERITIES:
            severity = "low"
        cursor.execute(
            """
            INSERT INTO audit_log
                (workspace_id, actor_id, action, severity, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                workspace_id,
                actor_id,
                action,
                severity,
                detail[:500] if detail else None,
                utc_timestamp(),
            ),
        )
    except Exception as e:
        # Audit failure must never break the main operation
        logger.error("Failed to write audit log: %s", e, exc_info=True)
