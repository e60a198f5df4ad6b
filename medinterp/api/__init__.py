"""
API orchestration boundary for the interpreter backend.

Design intent:
- Expose thin, typed endpoints for conversations, actions and live sessions.
- Keep request validation explicit and failure modes predictable.
- Wire collaborators through app.state so tests can swap them.
"""
