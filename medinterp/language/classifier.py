from __future__ import annotations

"""
Lexical English/Spanish classifier for short dialogue utterances.

Design intent:
- Decide a language tag from token overlap with fixed general + medical lexicons.
- Stay deterministic and side-effect free; the tag drives speaker-role assignment.
- Prefer English when evidence is weak, matching the clinician-side default.
"""

import re
from dataclasses import dataclass

from medinterp.internal_core.contracts import Language

_LANGUAGE_RATIO_THRESHOLD = 0.15

_SPANISH_WORDS = frozenset(
    {
        # general
        "el", "la", "los", "las", "es", "en", "de", "que", "y", "a", "un", "una", "se", "no",
        "te", "lo", "le", "da", "su", "por", "son", "con", "para", "tiene", "me", "si", "bien",
        "puede", "este", "está", "todo", "yo", "muy", "ahora", "cada", "sí", "voy", "gusta",
        "nada", "muchas", "ni", "contra", "otros", "ese", "eso", "había", "ante", "ellos", "e",
        "esto", "mí", "antes", "algunos", "qué", "unos", "otro", "otras", "otra", "él", "tanto",
        "esa", "estos", "mucho", "quienes", "muchos", "cual", "poco", "ella", "estar", "estas",
        "algunas", "algo", "nosotros", "mi", "mis", "tú", "ti", "tu", "tus", "ellas", "nosotras",
        "vosotros", "vosotras", "os", "del", "al",
        # medical
        "dolor", "gracias", "medicina", "doctor", "doctora", "paciente", "hospital", "enfermedad",
        "síntoma", "síntomas", "tratamiento", "medicamento", "medicamentos", "cita", "análisis",
        "sangre", "cabeza", "estómago", "brazo", "pierna", "corazón", "pecho", "espalda", "fiebre",
        "tos", "gripe", "resfriado", "alergia", "presión", "diabetes", "pastilla", "pastillas",
        "inyección", "radiografía", "examen", "consulta", "enfermera", "enfermero", "clínica",
        "urgencias", "emergencia", "receta", "dosis", "tomar", "sentir", "duele", "duelen",
        "molesta", "molestan", "mejor", "peor", "grave", "leve", "crónico", "agudo", "infección",
        "inflamación", "hinchazón", "mareo", "náusea", "vómito", "diarrea", "estreñimiento",
        "insomnio", "cansancio", "debilidad",
    }
)

_ENGLISH_WORDS = frozenset(
    {
        # general
        "the", "is", "are", "was", "were", "have", "has", "had", "do", "does", "did", "will",
        "would", "could", "should", "can", "may", "might", "must", "shall", "this", "that",
        "these", "those", "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us",
        "them", "my", "your", "his", "its", "our", "their", "and", "or", "but", "so", "if",
        "when", "where", "why", "how", "what", "who", "which", "with", "without", "for", "from",
        "to", "at", "in", "on", "by", "about", "over", "under", "through", "during", "before",
        "after", "above", "below", "up", "down", "out", "off", "again", "further", "then", "once",
        # medical
        "pain", "medicine", "medication", "doctor", "patient", "hospital", "disease", "illness",
        "symptom", "symptoms", "treatment", "appointment", "analysis", "blood", "head", "stomach",
        "arm", "leg", "heart", "chest", "back", "fever", "cough", "flu", "cold", "allergy",
        "pressure", "diabetes", "pill", "pills", "injection", "xray", "exam", "examination",
        "consultation", "nurse", "clinic", "emergency", "prescription", "dose", "take", "feel",
        "hurt", "hurts", "ache", "aches", "better", "worse", "serious", "mild", "chronic", "acute",
        "infection", "inflammation", "swelling", "dizzy", "nausea", "vomit", "diarrhea",
        "constipation", "insomnia", "tired", "weakness",
    }
)

_SPANISH_FALLBACK_RE = re.compile(
    r"\b(el|la|los|las|es|está|son|están|de|del|al|con|por|para|que|qué|sí|no|muy|más|menos"
    r"|bien|mal|dolor|duele|me|te|se|nos|os|le|les)\b"
)


@dataclass(frozen=True)
class LanguageScore:
    language: Language
    reason: str
    token_count: int
    spanish_matches: int
    english_matches: int
    spanish_ratio: float
    english_ratio: float


def _tokens(text: str) -> list[str]:
    # Whitespace split only; punctuation stays attached to the token.
    return [word for word in text.split() if len(word) > 1]


def score_language(text: str | None) -> LanguageScore:
    clean = str(text or "").lower().strip()
    words = _tokens(clean)
    if not words:
        return LanguageScore("en", "empty_default", 0, 0, 0, 0.0, 0.0)

    spanish_matches = sum(1 for word in words if word in _SPANISH_WORDS)
    english_matches = sum(1 for word in words if word in _ENGLISH_WORDS)
    spanish_ratio = spanish_matches / len(words)
    english_ratio = english_matches / len(words)

    def _score(language: Language, reason: str) -> LanguageScore:
        return LanguageScore(
            language=language,
            reason=reason,
            token_count=len(words),
            spanish_matches=spanish_matches,
            english_matches=english_matches,
            spanish_ratio=spanish_ratio,
            english_ratio=english_ratio,
        )

    if spanish_ratio > _LANGUAGE_RATIO_THRESHOLD and spanish_ratio > english_ratio:
        return _score("es", "spanish_lexicon")
    if english_ratio > _LANGUAGE_RATIO_THRESHOLD and english_ratio > spanish_ratio:
        return _score("en", "english_lexicon")
    if _SPANISH_FALLBACK_RE.search(clean):
        return _score("es", "spanish_function_words")
    return _score("en", "unclear_default")


def detect_language(text: str | None) -> Language:
    return score_language(text).language


def opposite_language(language: Language) -> Language:
    return "en" if language == "es" else "es"


def role_for_language(language: Language) -> str:
    # Speaker role follows the language tag, not the audio source.
    return "patient" if language == "es" else "doctor"
