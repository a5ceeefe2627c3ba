"""
Default English crisis lexicon.

Used as the fallback rule set when the reference-data API is not configured
(local development, tests). Production deployments load their curated
keywords/patterns from the platform and only fall back to these on an empty
first load.

Weights are per-trigger confidences; severities feed the severity-weighted
mean in the detection engine.
"""

from __future__ import annotations

from typing import List

from safeguard.schemas.detection import (
    CrisisCategory,
    CrisisKeyword,
    CrisisPattern,
    RiskLevel,
)

# Fiction, games and idioms that make violent words benign
_MEDIA_EXCLUSIONS = ["movie", "film", "game", "character", "book", "show", "episode", "series"]
# Sport and entertainment disappointments
_LEISURE_EXCLUSIONS = ["team", "match", "season", "game", "movie", "song", "ending", "show", "episode", "book"]


# =============================================================================
# KEYWORDS
# =============================================================================

# Ambiguous words carry phrase contexts: "kill" alone also means "I would kill
# for a pizza", "die" also means "my phone will die".
DEFAULT_KEYWORDS: List[CrisisKeyword] = [
    # Suicide
    CrisisKeyword(id="kw-en-suicide", word="suicide", category=CrisisCategory.SUICIDE,
                  severity=RiskLevel.CRITICAL, weight=0.9, exclusions=["prevention", "awareness", "squad"]),
    CrisisKeyword(id="kw-en-suicidal", word="suicidal", category=CrisisCategory.SUICIDE,
                  severity=RiskLevel.CRITICAL, weight=0.9),
    CrisisKeyword(id="kw-en-kill", word="kill", category=CrisisCategory.SUICIDE,
                  severity=RiskLevel.CRITICAL, weight=0.9,
                  exclusions=_MEDIA_EXCLUSIONS + ["kill time", "kill for"], context=["kill myself"]),
    CrisisKeyword(id="kw-en-end-my-life", word="end my life", category=CrisisCategory.SUICIDE,
                  severity=RiskLevel.CRITICAL, weight=0.95),
    CrisisKeyword(id="kw-en-die", word="die", category=CrisisCategory.SUICIDE,
                  severity=RiskLevel.MEDIUM, weight=0.5,
                  exclusions=_MEDIA_EXCLUSIONS + ["laughing", "embarrassment", "battery", "phone"],
                  context=["want to die", "wanna die", "deserve to die", "ready to die",
                           "wish i could die", "let me die", "i should die", "rather die"]),
    CrisisKeyword(id="kw-en-overdose", word="overdose", category=CrisisCategory.SUBSTANCE_ABUSE,
                  severity=RiskLevel.HIGH, weight=0.8,
                  exclusions=_MEDIA_EXCLUSIONS + ["coffee", "caffeine", "sugar", "chocolate"]),
    # Self harm
    CrisisKeyword(id="kw-en-hurt", word="hurt", category=CrisisCategory.SELF_HARM,
                  severity=RiskLevel.MEDIUM, weight=0.6, context=["myself"]),
    CrisisKeyword(id="kw-en-cut", word="cut", category=CrisisCategory.SELF_HARM,
                  severity=RiskLevel.HIGH, weight=0.7, context=["myself", "wrists", "wrist", "arms"]),
    CrisisKeyword(id="kw-en-self-harm", word="self harm", category=CrisisCategory.SELF_HARM,
                  severity=RiskLevel.HIGH, weight=0.8),
    # Depression
    CrisisKeyword(id="kw-en-hopeless", word="hopeless", category=CrisisCategory.SEVERE_DEPRESSION,
                  severity=RiskLevel.HIGH, weight=0.7,
                  exclusions=["hopeless at", "hopeless romantic", "hopeless case"]),
    CrisisKeyword(id="kw-en-worthless", word="worthless", category=CrisisCategory.SEVERE_DEPRESSION,
                  severity=RiskLevel.HIGH, weight=0.65,
                  context=["i'm worthless", "i am worthless", "feel worthless", "feeling worthless",
                           "so worthless", "completely worthless"]),
    CrisisKeyword(id="kw-en-sad", word="sad", category=CrisisCategory.SEVERE_DEPRESSION,
                  severity=RiskLevel.LOW, weight=0.35, exclusions=_LEISURE_EXCLUSIONS),
    # Panic
    CrisisKeyword(id="kw-en-panic-attack", word="panic attack", category=CrisisCategory.PANIC,
                  severity=RiskLevel.MEDIUM, weight=0.6),
    CrisisKeyword(id="kw-en-cant-breathe", word="can't breathe", category=CrisisCategory.PANIC,
                  severity=RiskLevel.MEDIUM, weight=0.55,
                  exclusions=["laughing", "funny", "hilarious", "lol", "cold", "nose"]),
    # Violence
    CrisisKeyword(id="kw-en-abuse", word="abusing", category=CrisisCategory.VIOLENCE,
                  severity=RiskLevel.HIGH, weight=0.7,
                  context=["abusing me", "abusing myself", "is abusing", "keeps abusing", "been abusing"]),
    # Eating disorder
    CrisisKeyword(id="kw-en-starve", word="starving myself", category=CrisisCategory.EATING_DISORDER,
                  severity=RiskLevel.HIGH, weight=0.7),
    CrisisKeyword(id="kw-en-purge", word="purging", category=CrisisCategory.EATING_DISORDER,
                  severity=RiskLevel.HIGH, weight=0.65,
                  context=["binge", "binging", "bingeing", "after eating", "after every meal",
                           "after meals", "keep purging", "been purging"]),
    # Trauma
    CrisisKeyword(id="kw-en-flashbacks", word="flashbacks", category=CrisisCategory.TRAUMA,
                  severity=RiskLevel.MEDIUM, weight=0.5,
                  context=["having flashbacks", "get flashbacks", "getting flashbacks",
                           "nightmares", "trauma", "assault", "abuse"]),
]


# =============================================================================
# PATTERNS
# =============================================================================

DEFAULT_PATTERNS: List[CrisisPattern] = [
    CrisisPattern(
        id="pt-en-active-ideation",
        name="Active suicidal ideation",
        description="Stated intent or plan to end one's life",
        pattern=r"(want|going|planning|plan|about)\s+to\s+(kill|end)\s+(myself|my\s+life|it\s+all)",
        category=CrisisCategory.SUICIDE,
        severity=RiskLevel.CRITICAL,
        weight=0.95,
        min_matches=1,
        context_window=12,
    ),
    CrisisPattern(
        id="pt-en-passive-ideation",
        name="Passive suicidal ideation",
        pattern=r"(wish|want)\s+(i\s+)?(was|were|to\s+be)\s+(dead|gone|never\s+born)"
                r"|(don'?t|do\s+not)\s+want\s+to\s+(live|wake\s+up|exist)",
        category=CrisisCategory.SUICIDE,
        severity=RiskLevel.HIGH,
        weight=0.8,
    ),
    CrisisPattern(
        id="pt-en-burden",
        name="Perceived burdensomeness",
        pattern=r"(everyone|they|world)\s+(would\s+be|is|are)\s+better\s+off\s+without\s+me",
        category=CrisisCategory.SEVERE_DEPRESSION,
        severity=RiskLevel.HIGH,
        weight=0.8,
    ),
    CrisisPattern(
        id="pt-en-goodbye",
        name="Farewell message",
        pattern=r"(this\s+is\s+)?my\s+(last|final)\s+(goodbye|message|note)",
        category=CrisisCategory.SUICIDE,
        severity=RiskLevel.CRITICAL,
        weight=0.85,
    ),
    CrisisPattern(
        id="pt-en-self-harm-act",
        name="Self-harm act",
        pattern=r"(cutting|burning|hurting|harming)\s+myself",
        category=CrisisCategory.SELF_HARM,
        severity=RiskLevel.HIGH,
        weight=0.8,
    ),
    CrisisPattern(
        id="pt-en-no-way-out",
        name="Hopelessness",
        pattern=r"(can'?t|cannot)\s+(go\s+on|take\s+(it|this)\s+anymore)|no\s+(way\s+out|reason\s+to\s+live)",
        category=CrisisCategory.SEVERE_DEPRESSION,
        severity=RiskLevel.HIGH,
        weight=0.7,
    ),
]
