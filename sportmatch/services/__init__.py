"""Client services.

Services hold the session, realtime and caching logic and are wired together
by SportMatchClient. They take their collaborators explicitly.
"""
