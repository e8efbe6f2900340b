"""OAuth endpoints and client registrations for the supported providers.

github-copilot
==============
Device authorization grant against github.com. The public client id is the
one the Copilot editor plugins register with. GitHub only issues refresh
tokens (and an ``expires_in``) when the OAuth app opts into expiring user
tokens; otherwise the access token has no known expiry.

antigravity
===========
Authorization-code grant with PKCE against Google accounts. ``access_type``
offline plus ``prompt=consent`` makes Google return a refresh token on every
consent, including re-authorization of an existing account.
"""

# Grant types
DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
AUTHORIZATION_CODE_GRANT_TYPE = "authorization_code"
REFRESH_TOKEN_GRANT_TYPE = "refresh_token"

# GitHub
GITHUB_DEVICE_CODE_URL = "https://github.com/login/device/code"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USERINFO_URL = "https://api.github.com/user"
GITHUB_CLIENT_ID = "Iv1.b507a08c87ecfe98"
GITHUB_SCOPES = ["read:user", "user:email"]

# Google
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

# Device-code error codes (RFC 8628 section 3.5)
DEVICE_AUTHORIZATION_PENDING = "authorization_pending"
DEVICE_SLOW_DOWN = "slow_down"
DEVICE_EXPIRED_TOKEN = "expired_token"
DEVICE_ACCESS_DENIED = "access_denied"

# RFC 8628 section 3.5: slow_down adds five seconds to the interval
SLOW_DOWN_INCREMENT_SECONDS = 5
DEFAULT_DEVICE_INTERVAL_SECONDS = 5
DEFAULT_DEVICE_EXPIRES_IN_SECONDS = 900

USER_AGENT = "oauth-pool/0.1"
