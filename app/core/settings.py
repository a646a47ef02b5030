from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False")


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")
    ddb_endpoint_url: Optional[str] = os.environ.get("DDB_ENDPOINT_URL") or None

    # Cognito (optional wiring; auth is pluggable)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")

    # DynamoDB tables
    ddb_conversations: str = os.environ.get("DDB_CONVERSATIONS", "Conversations")
    ddb_participants: str = os.environ.get("DDB_PARTICIPANTS", "Participants")
    ddb_messages: str = os.environ.get("DDB_MESSAGES", "Messages")
    ddb_message_edits: str = os.environ.get("DDB_MESSAGE_EDITS", "MessageEdits")
    ddb_stars: str = os.environ.get("DDB_STARS", "MessageStars")
    ddb_presence: str = os.environ.get("DDB_PRESENCE", "UserPresence")
    ddb_users: str = os.environ.get("DDB_USERS", "Users")
    ddb_blocks: str = os.environ.get("DDB_BLOCKS", "UserBlocks")
    ddb_reports: str = os.environ.get("DDB_REPORTS", "ConversationReports")

    # Messaging policy
    edit_window_seconds: int = int(os.environ.get("EDIT_WINDOW_SECONDS", "900"))
    max_message_length: int = int(os.environ.get("MAX_MESSAGE_LENGTH", "4000"))
    message_page_size: int = int(os.environ.get("MESSAGE_PAGE_SIZE", "50"))
    edits_ttl_seconds: int = int(os.environ.get("EDITS_TTL_SECONDS", str(90 * 24 * 3600)))
    reaction_retry_attempts: int = int(os.environ.get("REACTION_RETRY_ATTEMPTS", "3"))
    max_report_reason_length: int = int(os.environ.get("MAX_REPORT_REASON_LENGTH", "200"))
    max_report_details_length: int = int(os.environ.get("MAX_REPORT_DETAILS_LENGTH", "2000"))
    max_forward_batch: int = int(os.environ.get("MAX_FORWARD_BATCH", "50"))

    # Presence / typing
    presence_timeout_seconds: int = int(os.environ.get("PRESENCE_TIMEOUT_SECONDS", "90"))
    presence_ttl_seconds: int = int(os.environ.get("PRESENCE_TTL_SECONDS", "86400"))
    heartbeat_interval_seconds: int = int(os.environ.get("HEARTBEAT_INTERVAL_SECONDS", "30"))
    presence_poll_seconds: int = int(os.environ.get("PRESENCE_POLL_SECONDS", "15"))
    typing_ttl_seconds: int = int(os.environ.get("TYPING_TTL_SECONDS", "5"))

    # Subscriptions / SSE
    subscription_queue_size: int = int(os.environ.get("SUBSCRIPTION_QUEUE_SIZE", "100"))
    sse_ping_seconds: int = int(os.environ.get("SSE_PING_SECONDS", "15"))

    # Retry policy for idempotent operations
    retry_attempts: int = int(os.environ.get("RETRY_ATTEMPTS", "4"))
    retry_base_delay: float = float(os.environ.get("RETRY_BASE_DELAY", "0.2"))

    # Notifications (SNS topic consumed by the email/push collaborator)
    notifications_topic_arn: str = os.environ.get("NOTIFICATIONS_TOPIC_ARN", "")

    audit_log_enabled: bool = _flag("AUDIT_LOG_ENABLED", "1")
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")


S = Settings()
