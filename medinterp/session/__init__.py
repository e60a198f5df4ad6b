"""
Live dialogue session boundary.

Design intent:
- Own one transport connection per conversation and its phase transitions.
- Consume transport events one at a time, in arrival order.
- Hand candidate actions to the action lifecycle; never execute them here.
"""
