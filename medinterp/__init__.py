"""
Medical interpreter backend package.

Design intent:
- Turn a live bilingual transcription/translation stream into stored utterances.
- Route detected clinical intents through a guarded action lifecycle.
- Keep transport, classification and dispatch concerns in separate modules.
"""
