"""
Application-wide constants.
Centralizes magic numbers and configuration values.
"""

# Payment provider limits
STRIPE_METADATA_VALUE_MAX_LENGTH = 500
MINOR_UNITS_PER_MAJOR = 100

# Validation limits
MAX_NOTES_LENGTH = 1000
MAX_GIFT_MESSAGE_LENGTH = 500
MAX_NAME_LENGTH = 100
MAX_POS_ITEMS = 50
MAX_MINUTES_PER_OPERATION = 10000

# Gift card codes: GIFT-XXXX-XXXX, no I/O/0/1 to avoid misreading
GIFT_CODE_PREFIX = "GIFT"
GIFT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
GIFT_CODE_GROUPS = 2
GIFT_CODE_GROUP_LENGTH = 4
GIFT_CODE_MAX_ATTEMPTS = 5

# Compare-and-set retries for balance updates
BALANCE_CAS_MAX_ATTEMPTS = 5

# Stripe subscription statuses that can still be modified or cancelled
LIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due", "incomplete"})
