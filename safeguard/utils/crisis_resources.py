"""Static panic-mode catalogs: crisis resources and guided breathing exercises."""

from __future__ import annotations

from typing import Dict, List, Optional

from safeguard.schemas.panic import (
    BreathingExercise,
    BreathingPattern,
    PanicResource,
    ResourceContact,
    ResourceType,
)

PANIC_RESOURCES: List[PanicResource] = [
    PanicResource(
        id="res-988",
        type=ResourceType.HOTLINE,
        name="988 Suicide & Crisis Lifeline",
        description="Free, confidential support 24/7 for people in distress.",
        contact_info=ResourceContact(phone="988", sms="988", url="https://988lifeline.org"),
        languages=["en", "es"],
        country="US",
        priority=1,
        categories=["suicide", "self_harm", "severe_depression"],
    ),
    PanicResource(
        id="res-crisis-text",
        type=ResourceType.TEXT,
        name="Crisis Text Line",
        description="Text HOME to 741741 to reach a trained crisis counselor.",
        contact_info=ResourceContact(sms="741741", url="https://www.crisistextline.org"),
        country="US",
        priority=1,
        categories=["suicide", "panic", "self_harm"],
    ),
    PanicResource(
        id="res-emergency",
        type=ResourceType.EMERGENCY_SERVICE,
        name="Emergency Services",
        description="Call for immediate danger to life.",
        contact_info=ResourceContact(phone="911"),
        country="US",
        priority=1,
        age_groups=["child", "teen", "adult", "senior"],
        categories=["suicide", "violence"],
    ),
    PanicResource(
        id="res-trevor",
        type=ResourceType.CHAT,
        name="The Trevor Project",
        description="Crisis support for LGBTQ+ young people.",
        contact_info=ResourceContact(phone="1-866-488-7386", url="https://www.thetrevorproject.org"),
        country="US",
        priority=2,
        age_groups=["teen"],
        categories=["suicide"],
    ),
    PanicResource(
        id="res-grounding",
        type=ResourceType.SELF_HELP,
        name="5-4-3-2-1 Grounding",
        description="Name five things you see, four you can touch, three you hear, two you smell, one you taste.",
        priority=3,
        age_groups=["child", "teen", "adult", "senior"],
        categories=["panic", "trauma"],
    ),
    PanicResource(
        id="res-box-breathing",
        type=ResourceType.BREATHING_EXERCISE,
        name="Box breathing",
        description="Guided 4-4-4-4 breathing to slow your heart rate.",
        priority=2,
        age_groups=["child", "teen", "adult", "senior"],
        categories=["panic"],
    ),
]


BREATHING_EXERCISES: List[BreathingExercise] = [
    BreathingExercise(
        id="box-breathing",
        name="Box Breathing",
        description="Equal counts of inhale, hold, exhale and pause.",
        duration=64,
        pattern=BreathingPattern(inhale=4, hold=4, exhale=4, pause=4),
        instructions=[
            "Breathe in slowly through your nose",
            "Hold your breath gently",
            "Exhale slowly through your mouth",
            "Pause before the next breath",
        ],
        benefits=["Reduces stress", "Improves focus"],
    ),
    BreathingExercise(
        id="4-7-8",
        name="4-7-8 Breathing",
        description="Long exhale breathing that calms the nervous system.",
        duration=76,
        pattern=BreathingPattern(inhale=4, hold=7, exhale=8, pause=0),
        instructions=[
            "Inhale quietly through your nose for 4 seconds",
            "Hold for 7 seconds",
            "Exhale completely through your mouth for 8 seconds",
        ],
        difficulty="intermediate",
        benefits=["Eases anxiety", "Helps with sleep"],
    ),
    BreathingExercise(
        id="calm-breath",
        name="Calm Breath",
        description="Short, simple breathing for the first moments of a panic attack.",
        duration=30,
        pattern=BreathingPattern(inhale=3, hold=0, exhale=5, pause=2),
        instructions=["Breathe in for 3", "Breathe out for 5", "Rest for 2"],
        benefits=["Quick relief"],
    ),
]

_EXERCISES_BY_ID: Dict[str, BreathingExercise] = {e.id: e for e in BREATHING_EXERCISES}
_RESOURCES_BY_ID: Dict[str, PanicResource] = {r.id: r for r in PANIC_RESOURCES}


def get_breathing_exercise(exercise_id: str) -> Optional[BreathingExercise]:
    return _EXERCISES_BY_ID.get(exercise_id)


def get_resource(resource_id: str) -> Optional[PanicResource]:
    return _RESOURCES_BY_ID.get(resource_id)


def filter_resources(
    *,
    type: Optional[ResourceType] = None,
    language: Optional[str] = None,
    age_group: Optional[str] = None,
    category: Optional[str] = None,
    emergency: bool = False,
) -> List[PanicResource]:
    """Catalog entries matching every given filter, highest priority first."""
    out = []
    for res in PANIC_RESOURCES:
        if type is not None and res.type != type:
            continue
        if language and language not in res.languages:
            continue
        if age_group and age_group not in res.age_groups:
            continue
        if category and category not in res.categories:
            continue
        if emergency and res.type not in (ResourceType.HOTLINE, ResourceType.EMERGENCY_SERVICE):
            continue
        out.append(res)
    return sorted(out, key=lambda r: r.priority)
