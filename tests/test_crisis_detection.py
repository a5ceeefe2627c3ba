"""
Test suite for crisis detection.

Covers:
1. Keyword / pattern matching (whole tokens, exclusions, context words)
2. Confidence scoring and context adjustment
3. The detection service end to end (events, audit, history, batching)
4. The keyword/pattern store
5. The context cache

Run with: python -m pytest tests/test_crisis_detection.py -v
"""

import asyncio
import time

import pytest

from safeguard.core import events
from safeguard.schemas.crisis_event import AccessLevel, CrisisEventType
from safeguard.schemas.detection import (
    CrisisCategory,
    CrisisKeyword,
    CrisisPattern,
    DetectionConfig,
    DetectionConfigUpdate,
    DetectionFilters,
    DetectionTrigger,
    EscalationTier,
    RiskLevel,
    TriggerType,
)
from safeguard.services.context_service import ContextService
from safeguard.services.crisis_detection_service import (
    CrisisDetectionService,
    context_boost,
    level_for_confidence,
    match_keywords,
    match_patterns,
    weighted_confidence,
)
from safeguard.services.intervention_logger import InterventionLogger
from safeguard.services.keyword_store import KeywordStore, compile_patterns
from safeguard.utils.crisis_lexicon import DEFAULT_KEYWORDS, DEFAULT_PATTERNS
from safeguard.utils.text_cleaning import clean_text, tokenize

from tests.conftest import FakeContextSource, FakeReferenceSource, late_night_context


async def build_detection(bus, scheduler, *, context=None, config=None, audit=None, context_timeout=2.0):
    rules = KeywordStore(bus=bus)
    service = CrisisDetectionService(
        rules,
        ContextService(context, timeout=context_timeout),
        bus,
        scheduler,
        config=config,
        intervention_logger=audit,
    )
    await service.initialize()
    return service


CRISIS_MESSAGES = [
    "I want to kill myself",
    "I am going to end my life tonight",
    "I have been thinking about suicide a lot",
    "I feel suicidal again",
    "I keep cutting myself when I am alone",
    "I want to hurt myself",
    "I feel so hopeless about everything",
    "I am worthless and everyone knows it",
    "Everyone would be better off without me",
    "This is my last goodbye",
    "I don't want to live anymore",
    "I wish I was dead",
    "I can't go on like this",
    "There is no reason to live",
    "I took an overdose of my pills",
    "I started to self harm again",
    "I am planning to end it all",
    "I cut my wrists last night",
    "I am having a panic attack and I can't breathe",
    "I have been starving myself for days",
    "I keep purging after every meal",
    "I keep having flashbacks of the assault",
    "I just want to die",
    "I deserve to die",
    "I'm going to kill myself",
    "Nobody would care if I committed suicide",
    "I have a plan to kill myself this weekend",
    "I want to end my life soon",
    "I can't take it anymore",
    "There is no way out for me",
    "They would be better off without me",
    "I'm hurting myself again",
    "I am burning myself with a lighter",
    "I feel hopeless and alone",
    "Life is hopeless",
    "I am suicidal and scared",
    "I wrote my final note",
    "I don't want to wake up tomorrow",
    "I wish I were never born",
    "I want to be gone",
    "Thinking about suicide every day",
    "I keep thinking I should overdose",
    "I feel worthless",
    "My panic attack won't stop",
    "I cannot go on",
    "I'm about to end my life",
    "I want to cut myself",
    "I do not want to exist",
    "I'd rather die than keep going",
    "Please help me, I'm suicidal",
]

NEUTRAL_MESSAGES = [
    "I could die of embarrassment after that meeting",
    "My plants will die if I forget to water them",
    "I would kill for a pizza right now",
    "I cut my finger while cooking and it hurt me a bit",
    "I feel sad my team lost",
    "The character will die in the movie",
    "I hurt my friend's feelings by accident",
    "Had a great day at the park",
    "Can we move our session to Thursday?",
    "The new medication schedule is working well",
    "I finished my homework early today",
    "My sister is visiting this weekend",
    "I tried a new recipe for dinner",
    "Work was busy but manageable",
    "I'm looking forward to the concert",
    "The weather is lovely this morning",
    "I went for a long walk with my dog",
    "Thanks for the breathing tips, they helped",
    "I slept better last night",
    "My exam went better than expected",
    "We watched a funny show together",
    "I'm learning to play the guitar",
    "The traffic was terrible today",
    "I have a dentist appointment tomorrow",
    "My boss will kill me if I'm late again",
    "That joke killed me",
    "The battery is about to die",
    "I'm starving, let's get lunch",
    "Time to purge my closet of old clothes",
    "I spent the day cleaning the garage",
    "Our team won the match",
    "I'm reading a great book about history",
    "I called my mom this afternoon",
    "The meeting ran long but it was fine",
    "I want to start running again",
    "I planned a trip to the beach",
    "My cat knocked over a glass of water",
    "I laughed so hard at that video",
    "I'm trying to drink more water",
    "The kids loved the museum",
    "I cleaned up my inbox today",
    "My coffee went cold again",
    "I feel calmer after journaling",
    "We had pizza for dinner",
    "I'm proud of how I handled that conversation",
    "The garden is blooming",
    "I got a haircut yesterday",
    "I can't wait for the holidays",
    "I want to go on vacation",
    "Let's catch up next week",
]


# =============================================================================
# MATCHING TESTS
# =============================================================================

class TestKeywordMatching:
    """Keyword rules match whole tokens and honour exclusions and context words."""

    def test_substring_does_not_match(self):
        triggers = match_keywords(tokenize("My skillset keeps growing"), DEFAULT_KEYWORDS)
        assert triggers == []

    def test_exclusion_vetoes_match(self):
        text = "That movie character wanted to kill me"
        assert match_keywords(tokenize(text), DEFAULT_KEYWORDS) == []

    def test_context_word_required(self):
        assert match_keywords(tokenize("I'm going to hurt"), DEFAULT_KEYWORDS) == []
        triggers = match_keywords(tokenize("I want to hurt myself"), DEFAULT_KEYWORDS)
        assert [t.value for t in triggers] == ["hurt"]
        assert triggers[0].category == CrisisCategory.SELF_HARM

    def test_multi_word_phrase(self):
        triggers = match_keywords(tokenize("I just want to end my life"), DEFAULT_KEYWORDS)
        assert "end my life" in [t.value for t in triggers]

    def test_suicide_awareness_excluded(self):
        assert match_keywords(tokenize("Our school runs suicide prevention week"), DEFAULT_KEYWORDS) == []

    @pytest.mark.parametrize("text", [
        "I could die of embarrassment",
        "My plants will die if I forget to water them",
        "I would kill for a pizza",
        "My boss will kill me if I'm late",
        "I cut my finger cooking and it hurt me a bit",
        "I feel sad my team lost",
        "The character will die in the movie",
        "I hurt my friend",
    ])
    def test_everyday_idioms_do_not_match(self, text):
        assert match_keywords(tokenize(text), DEFAULT_KEYWORDS) == []

    def test_media_exclusion_on_custom_rule(self):
        die = CrisisKeyword(id="kw-die", word="die", category=CrisisCategory.SUICIDE,
                            severity=RiskLevel.HIGH, weight=0.8, exclusions=["movie"])
        hurt = CrisisKeyword(id="kw-hurt", word="hurt", category=CrisisCategory.SELF_HARM,
                             severity=RiskLevel.MEDIUM, weight=0.6, context=["myself", "me"])

        assert match_keywords(tokenize("The character will die in the movie"), [die]) == []
        assert match_keywords(tokenize("I hurt my friend"), [hurt]) == []
        assert len(match_keywords(tokenize("I want to hurt myself"), [hurt])) == 1


class TestPatternMatching:
    def test_active_ideation_pattern(self):
        triggers = match_patterns(clean_text("I am planning to kill myself"), compile_patterns(DEFAULT_PATTERNS))
        assert [t.value for t in triggers] == ["Active suicidal ideation"]
        assert triggers[0].type == TriggerType.PATTERN

    def test_min_matches_within_window(self):
        rule = CrisisPattern(
            id="pt-repeat", name="Repeated goodbye", pattern=r"goodbye",
            category=CrisisCategory.SUICIDE, severity=RiskLevel.HIGH, weight=0.8,
            min_matches=2, context_window=5,
        )
        compiled = compile_patterns([rule])
        assert match_patterns("goodbye goodbye", compiled)
        far_apart = "goodbye " + "word " * 10 + "goodbye"
        assert match_patterns(far_apart, compiled) == []
        assert match_patterns("goodbye everyone", compiled) == []

    def test_invalid_regex_skipped(self):
        bad = CrisisPattern(
            id="pt-bad", name="Broken", pattern=r"(unclosed",
            category=CrisisCategory.PANIC, severity=RiskLevel.LOW, weight=0.3,
        )
        assert compile_patterns([bad]) == ()


# =============================================================================
# SCORING TESTS
# =============================================================================

class TestScoring:
    def _trigger(self, confidence, severity):
        return DetectionTrigger(
            type=TriggerType.KEYWORD, value="x", confidence=confidence,
            category=CrisisCategory.SUICIDE, severity=severity,
        )

    def test_weighted_mean_by_severity(self):
        triggers = [self._trigger(1.0, RiskLevel.CRITICAL), self._trigger(0.4, RiskLevel.LOW)]
        # (1.0 * 1.0 + 0.4 * 0.25) / 1.25
        assert weighted_confidence(triggers) == pytest.approx(0.88)

    def test_confidence_capped(self):
        assert weighted_confidence([self._trigger(1.0, RiskLevel.HIGH)]) <= 1.0

    @pytest.mark.parametrize("confidence,level", [
        (0.9, RiskLevel.CRITICAL),
        (0.85, RiskLevel.CRITICAL),
        (0.7, RiskLevel.HIGH),
        (0.4, RiskLevel.MEDIUM),
        (0.2, RiskLevel.LOW),
    ])
    def test_level_thresholds(self, confidence, level):
        assert level_for_confidence(confidence) == level

    def test_context_boost(self):
        config = DetectionConfig()
        assert context_boost(late_night_context(previous_alerts=3), config) == pytest.approx(0.3)
        daytime = late_night_context(previous_alerts=0).model_copy(update={"time_of_day": 14})
        # history flag alone counts as half the signal
        assert context_boost(daytime, config) == pytest.approx(0.1)


# =============================================================================
# SERVICE TESTS
# =============================================================================

class TestDetectionService:
    """End-to-end analysis through ``CrisisDetectionService``."""

    async def test_active_ideation_is_critical(self, bus, scheduler, recorder):
        recorder.watch(events.CRISIS_DETECTED)
        service = await build_detection(bus, scheduler)

        result = await service.analyze_message("I want to kill myself tonight", "client-1", "conv-1")

        assert result is not None
        assert result.confidence > 0.7
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.requires_immediate is True
        assert result.escalation_level == EscalationTier.CRISIS_TEAM
        assert CrisisCategory.SUICIDE in result.categories
        assert "Immediate intervention required" in result.recommendations
        assert recorder.of(events.CRISIS_DETECTED) == [result]

    async def test_benign_message_has_no_result(self, bus, scheduler, recorder):
        recorder.watch(events.CRISIS_DETECTED)
        service = await build_detection(bus, scheduler)

        assert await service.analyze_message("Had a great day at the park", "client-1", "conv-1") is None
        assert await service.analyze_message("   ", "client-1", "conv-1") is None
        assert recorder.of(events.CRISIS_DETECTED) == []

    async def test_confidence_threshold_gates_result(self, bus, scheduler):
        service = await build_detection(bus, scheduler, config=DetectionConfig(confidence_threshold=0.5))
        assert await service.analyze_message("I feel sad today", "client-1", "conv-1") is None

        service.update_config(DetectionConfigUpdate(confidence_threshold=0.3))
        assert await service.analyze_message("I feel sad today", "client-1", "conv-1") is not None

    async def test_context_raises_risk(self, bus, scheduler):
        plain = await build_detection(bus, scheduler)
        boosted = await build_detection(bus, scheduler, context=FakeContextSource(late_night_context()))

        base = await plain.analyze_message("I feel so hopeless", "client-1", "conv-1")
        with_context = await boosted.analyze_message("I feel so hopeless", "client-1", "conv-1")

        assert base.risk_level == RiskLevel.HIGH
        assert with_context.risk_level == RiskLevel.CRITICAL
        assert with_context.confidence > base.confidence
        assert with_context.context_factors is not None
        assert "Review previous intervention strategies" in with_context.recommendations

    async def test_slow_context_is_skipped(self, bus, scheduler):
        slow = FakeContextSource(late_night_context(), delay=1.0)
        service = await build_detection(bus, scheduler, context=slow, context_timeout=0.05)

        result = await service.analyze_message("I feel so hopeless", "client-1", "conv-1")

        assert result.risk_level == RiskLevel.HIGH
        assert result.context_factors is None

    async def test_disabled_engine(self, bus, scheduler):
        service = await build_detection(bus, scheduler, config=DetectionConfig(enabled=False))
        assert await service.analyze_message("I want to kill myself", "client-1", "conv-1") is None

    async def test_requires_immediate_only_when_critical(self, bus, scheduler):
        service = await build_detection(bus, scheduler)
        messages = [
            "I want to kill myself",
            "I feel so hopeless",
            "I want to hurt myself",
            "I feel sad today",
            "everyone would be better off without me",
        ]
        results = [await service.analyze_message(m, "client-1", "conv-1") for m in messages]
        for result in filter(None, results):
            assert result.requires_immediate == (result.risk_level == RiskLevel.CRITICAL)

    async def test_pii_is_sanitised(self, bus, scheduler):
        service = await build_detection(bus, scheduler)
        result = await service.analyze_message(
            "I want to kill myself, my number is 555-123-4567", "client-1", "conv-1",
        )
        assert "555-123-4567" not in result.content
        assert "[PHONE]" in result.content

    async def test_concurrent_analysis(self, bus, scheduler):
        service = await build_detection(bus, scheduler)
        started = time.perf_counter()

        crisis, neutral = await asyncio.gather(
            asyncio.gather(*(
                service.analyze_message(m, f"client-{i}", f"conv-{i}") for i, m in enumerate(CRISIS_MESSAGES)
            )),
            asyncio.gather(*(
                service.analyze_message(m, f"client-{i}", f"conv-{i}") for i, m in enumerate(NEUTRAL_MESSAGES)
            )),
        )

        assert time.perf_counter() - started < 5.0
        assert len(CRISIS_MESSAGES) == len(NEUTRAL_MESSAGES) == 50
        detected = [r for r in crisis if r is not None]
        assert len(detected) >= 40
        assert sum(r is not None for r in neutral) <= 1
        assert len({r.id for r in detected}) == len(detected)

    async def test_fictional_death_is_not_detected(self, bus, scheduler):
        service = await build_detection(bus, scheduler)
        assert await service.analyze_message("The character will die in the movie", "client-1", "conv-1") is None
        assert await service.analyze_message("I hurt my friend", "client-1", "conv-1") is None
        assert await service.analyze_message("I want to hurt myself", "client-1", "conv-1") is not None

    async def test_failing_listener_does_not_break_analysis(self, bus, scheduler):
        def explode(_result):
            raise RuntimeError("listener bug")

        bus.on(events.CRISIS_DETECTED, explode)
        service = await build_detection(bus, scheduler)

        assert await service.analyze_message("I want to kill myself", "client-1", "conv-1") is not None

    async def test_internal_error_emits_analysis_error(self, bus, scheduler, recorder):
        class BrokenRules:
            @property
            def snapshot(self):
                raise RuntimeError("rules corrupted")

        recorder.watch(events.ANALYSIS_ERROR)
        service = CrisisDetectionService(BrokenRules(), ContextService(None), bus, scheduler)

        assert await service.analyze_message("I want to kill myself", "client-1", "conv-1") is None
        assert recorder.of(events.ANALYSIS_ERROR)[0]["user_id"] == "client-1"

    async def test_detection_is_audited(self, bus, scheduler):
        audit = InterventionLogger(None, bus)
        service = await build_detection(bus, scheduler, audit=audit)

        result = await service.analyze_message("I want to kill myself", "client-1", "conv-1")
        await audit.flush()

        logged = await audit.get_crisis_events()
        assert len(logged) == 1
        assert logged[0].event_type == CrisisEventType.CRISIS_DETECTED
        assert logged[0].detection_id == result.id
        assert logged[0].access_level == AccessLevel.RESTRICTED

    async def test_history_filters(self, bus, scheduler):
        service = await build_detection(bus, scheduler)
        await service.analyze_message("I want to kill myself", "client-1", "conv-1")
        await service.analyze_message("I feel so hopeless", "client-2", "conv-2")

        mine = await service.get_detection_history(DetectionFilters(user_id="client-1"))
        critical = await service.get_detection_history(DetectionFilters(risk_level=RiskLevel.CRITICAL))

        assert [r.user_id for r in mine] == ["client-1"]
        assert [r.user_id for r in critical] == ["client-1"]

    async def test_update_config_emits_event(self, bus, scheduler, recorder):
        recorder.watch(events.CONFIG_UPDATED)
        service = await build_detection(bus, scheduler)

        config = service.update_config(DetectionConfigUpdate(escalation_threshold=RiskLevel.CRITICAL))

        assert config.escalation_threshold == RiskLevel.CRITICAL
        assert recorder.of(events.CONFIG_UPDATED)[0]["changes"] == {"escalation_threshold": RiskLevel.CRITICAL}

    async def test_batch_queue(self, bus, scheduler):
        service = await build_detection(bus, scheduler, config=DetectionConfig(batch_analysis=True))

        assert service.queue_for_analysis("I want to kill myself", "client-1", "conv-1")
        assert service.queue_for_analysis("Lovely weather", "client-1", "conv-1")
        assert service.queued == 2

        results = await service.process_batch()

        assert len(results) == 1
        assert service.queued == 0

    async def test_queue_rejected_when_batching_disabled(self, bus, scheduler):
        service = await build_detection(bus, scheduler)
        assert service.queue_for_analysis("I want to kill myself", "client-1", "conv-1") is False


# =============================================================================
# KEYWORD STORE TESTS
# =============================================================================

class TestKeywordStore:
    async def test_defaults_without_source(self, bus):
        store = KeywordStore(bus=bus)
        snapshot = await store.load()

        assert snapshot.keywords_loaded and snapshot.patterns_loaded
        assert snapshot.keyword_count == len(DEFAULT_KEYWORDS)
        assert len(snapshot.patterns) == len(DEFAULT_PATTERNS)

    async def test_failed_kind_keeps_previous_rules(self, bus, recorder):
        recorder.watch(events.RULES_RELOADED)
        custom = CrisisKeyword(
            id="kw-custom", word="unalive", category=CrisisCategory.SUICIDE,
            severity=RiskLevel.CRITICAL, weight=0.9,
        )
        store = KeywordStore(FakeReferenceSource([custom], fail_patterns=True), bus=bus)
        store.replace(patterns=DEFAULT_PATTERNS)

        snapshot = await store.load()

        assert [k.word for k in snapshot.keywords_for("en")] == ["unalive"]
        assert len(snapshot.patterns) == len(DEFAULT_PATTERNS)
        assert recorder.of(events.RULES_RELOADED) == [{"keywords": 1, "patterns": len(DEFAULT_PATTERNS)}]

    async def test_keywords_partitioned_by_language(self, bus):
        spanish = CrisisKeyword(
            id="kw-es", word="suicidarme", category=CrisisCategory.SUICIDE,
            severity=RiskLevel.CRITICAL, weight=0.9, language="ES",
        )
        store = KeywordStore(FakeReferenceSource([spanish]), bus=bus)
        snapshot = await store.load()

        assert snapshot.keywords_for("es") == (spanish,)
        assert snapshot.keywords_for("en") == ()


class TestContextService:
    async def test_cached_within_ttl(self):
        source = FakeContextSource(late_night_context())
        service = ContextService(source)

        await service.get_context("client-1", "conv-1")
        await service.get_context("client-1", "conv-2")

        assert source.calls == 1

    async def test_cache_is_bounded(self):
        source = FakeContextSource(late_night_context())
        service = ContextService(source, max_entries=2)

        for user_id in ("client-1", "client-2", "client-3"):
            await service.get_context(user_id, "conv-1")
        await service.get_context("client-1", "conv-1")

        # client-1 was evicted, so the last call went to the source again
        assert source.calls == 4
        assert list(service._cache) == ["client-3", "client-1"]
