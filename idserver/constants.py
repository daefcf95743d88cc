"""
Protocol constants and defaults.
"""

AUTH_CODE_EXPIRY_SECONDS = 600
DEVICE_CODE_EXPIRY_SECONDS = 1800
DEVICE_CODE_POLL_INTERVAL = 5
ACCESS_TOKEN_EXPIRY_SECONDS = 3600
ID_TOKEN_EXPIRY_SECONDS = 3600
DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS = 14
MAX_REFRESH_TOKEN_LIFETIME_DAYS = 90
REFRESH_TOKEN_RETENTION_SECONDS = 86400
# A used refresh token presented again within this window is a concurrent
# duplicate redemption, not a replay, and does not revoke the family.
REFRESH_TOKEN_REUSE_GRACE_SECONDS = 5
KEY_ROTATION_INTERVAL_SECONDS = 30 * 86400
SIGNING_ALGORITHM = "RS256"
RSA_KEY_SIZE = 2048

# Redis records outlive their logical expiry so late callers see "expired"
# instead of "not found"; the sweeper removes them once expired.
REDIS_EXPIRY_GRACE_SECONDS = 300

CLIENT_CACHE_SECONDS = 300
CLIENT_NEGATIVE_CACHE_SECONDS = 60

# User codes avoid confusable characters (0/O, 1/I).
USER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
USER_CODE_LENGTH = 8

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_DEVICE_CODE = "urn:ietf:params:oauth:grant-type:device_code"
GRANT_PASSWORD = "password"

PKCE_METHODS = ("S256", "plain")

SCOPE_OPENID = "openid"
SCOPE_OFFLINE_ACCESS = "offline_access"
