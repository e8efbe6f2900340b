"""Account pool, failover selection and token refresh."""
