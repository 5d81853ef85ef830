"""State stores.

Stores handle:
- Credentials: the access/refresh pair and the signed-in user (single writer)
- Redis: optional persistence of the session between process restarts

No request or retry logic in stores - that belongs in services.
"""
