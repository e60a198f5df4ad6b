"""
End-of-conversation summary boundary.

Design intent:
- Produce a short clinical summary when a conversation is finalized.
- Degrade to a fixed message when the model is unavailable.
"""
