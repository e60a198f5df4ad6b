"""
Lexical language boundary for the interpreter.

Design intent:
- Classify short utterances as English or Spanish without ground truth.
- Reject noise before it reaches classification or storage.
- Recognize the spoken "repeat that" command in both languages.
"""
