"""Defaults and limits for the portfolio access-control schema.

Values here are the fallbacks used when the corresponding environment
variable is not set. Deployments override them through the environment
(see DatabaseManager and InvitationService).
"""

# Invitation token settings
INVITATION_DEFAULTS = {
    "expiration_days": 7,     # Overridden by INVITATION_EXPIRATION_DAYS
    "token_bytes": 32,        # 256 bits of entropy, ~43 URL-safe characters
    "min_token_bytes": 16,    # Never issue tokens below 128 bits
}

# Tables owned or referenced by this package, used by migration verification
ACCESS_CONTROL_TABLES = [
    "users",
    "portfolios",
    "properties",
    "memberships",
    "invitation_tokens",
    "permission_audit_log",
]

# Database enum type names created by the initial migration
ACCESS_CONTROL_ENUMS = {
    "portfolio_role": ("owner", "admin", "member", "viewer"),
    "invitation_token_status": ("pending", "accepted", "expired", "revoked"),
    "permission_audit_action": (
        "role_change",
        "invitation_sent",
        "invitation_accepted",
        "access_revoked",
    ),
}

# Connection pool settings
CONNECTION_POOL_DEFAULTS = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 3600,
}

# Upper bound on rows returned by a single audit query
AUDIT_QUERY_MAX_LIMIT = 1000
