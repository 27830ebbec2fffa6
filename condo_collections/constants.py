DEFAULT_ROLES = [
    ("HOMEOWNER", "Unit owner"),
    ("BOARD", "Board member who receives the collections digest"),
    ("TREASURER", "Treasurer responsible for billing and collections"),
    ("SECRETARY", "Secretary responsible for owner correspondence"),
    ("ATTORNEY", "Outside counsel receiving collection referrals"),
    ("SYSADMIN", "System administrator with full access"),
]

# Higher number means more privileges
ROLE_PRIORITY = {
    "HOMEOWNER": 10,
    "SECRETARY": 30,
    "ATTORNEY": 35,
    "BOARD": 40,
    "TREASURER": 50,
    "SYSADMIN": 100,
}

DAYS_PER_MONTH = 30

# Lower bounds (inclusive) of each delinquency bucket, in days.
TIER_30_60_DAYS = 30
TIER_60_90_DAYS = 60
TIER_90_PLUS_DAYS = 90

PRIORITY_BY_STATE = {
    "current": "low",
    "pending": "low",
    "tier_30_60": "medium",
    "tier_60_90": "high",
    "tier_90_plus": "critical",
    "attorney": "attorney",
}

RECOMMENDED_ACTIONS = {
    "current": "Current - No action needed",
    "pending": "Send 30-day courtesy reminder",
    "tier_30_60": "Send 60-day notice with late fee warning",
    "tier_60_90": "Send 90-day final notice before attorney",
    "tier_90_plus": "URGENT: Refer to attorney immediately",
    "attorney": "Continue with attorney - No further board action needed",
}
