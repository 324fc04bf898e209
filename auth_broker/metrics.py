from prometheus_client import Counter, Histogram

# Login initiations, labeled by outcome
# outcome: redirected, rate_limited, error
auth_login_total = Counter(
    'auth_login_total',
    'Total login initiations',
    ['outcome']
)

# Callback completions
# outcome: success or the error code the client was redirected with
auth_callback_total = Counter(
    'auth_callback_total',
    'Total OAuth callback completions',
    ['outcome']
)

# Refresh attempts
# outcome: success, no_refresh_token, token_refresh_failed, rate_limited
auth_refresh_total = Counter(
    'auth_refresh_total',
    'Total token refresh attempts',
    ['outcome']
)

auth_logout_total = Counter(
    'auth_logout_total',
    'Total logouts'
)

# Requests rejected by the auth rate limiter
auth_rate_limit_rejections_total = Counter(
    'auth_rate_limit_rejections_total',
    'Total requests rejected by the auth rate limiter',
    ['operation']
)

# Latency of token endpoint calls (seconds)
idp_token_request_seconds = Histogram(
    'idp_token_request_seconds',
    'Latency of IdP token endpoint requests in seconds',
    ['grant_type']
)

__all__ = [
    'auth_login_total',
    'auth_callback_total',
    'auth_refresh_total',
    'auth_logout_total',
    'auth_rate_limit_rejections_total',
    'idp_token_request_seconds',
]
