"""
Clinical action boundary.

Design intent:
- Track each detected action through detected/executing/completed/failed.
- Dispatch at most one webhook execution per action id at a time.
- Record failures on the action instead of raising them to the session.
"""
