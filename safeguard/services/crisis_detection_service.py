"""
Crisis Detection Service
========================

Scores chat messages for self-harm / suicide risk.

Pipeline per message:
- keyword matching on whole tokens (exclusions veto, context words required)
- regex patterns with a minimum match count inside a token window
- severity-weighted confidence, gated by ``confidence_threshold``
- additive context adjustment (late night, prior alerts / history)
- risk level, escalation tier and recommendations

Analysis reads one immutable rule snapshot and mutates no shared state, so
any number of messages can be analysed concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from safeguard.core import events
from safeguard.core.events import EventBus
from safeguard.core.scheduler import TaskScheduler
from safeguard.schemas.crisis_event import CrisisEventCreate, CrisisEventType, EventSeverity
from safeguard.schemas.detection import (
    ContextFactors,
    CrisisCategory,
    CrisisKeyword,
    DetectionConfig,
    DetectionConfigUpdate,
    DetectionFilters,
    DetectionResult,
    DetectionTrigger,
    EscalationTier,
    RiskLevel,
    TriggerType,
)
from safeguard.services.context_service import ContextService
from safeguard.services.interfaces import DetectionStore
from safeguard.services.keyword_store import CompiledPattern, KeywordStore, RuleSnapshot
from safeguard.utils.date_utils import as_utc, is_late_night, new_id, utcnow
from safeguard.utils.text_cleaning import clean_text, sanitize_pii, tokenize

logger = logging.getLogger(__name__)


# =============================================================================
# SCORING CONSTANTS
# =============================================================================

SEVERITY_WEIGHTS: Dict[RiskLevel, float] = {
    RiskLevel.LOW: 0.25,
    RiskLevel.MEDIUM: 0.5,
    RiskLevel.HIGH: 0.75,
    RiskLevel.CRITICAL: 1.0,
}

# (minimum confidence, level), checked top-down
RISK_THRESHOLDS: Tuple[Tuple[float, RiskLevel], ...] = (
    (0.85, RiskLevel.CRITICAL),
    (0.6, RiskLevel.HIGH),
    (0.35, RiskLevel.MEDIUM),
)

# previous alerts at which the history signal saturates
HISTORY_SATURATION_ALERTS = 3


def _max_level(*levels: RiskLevel) -> RiskLevel:
    return max(levels, key=lambda lvl: lvl.rank)


def level_for_confidence(confidence: float) -> RiskLevel:
    for floor, level in RISK_THRESHOLDS:
        if confidence >= floor:
            return level
    return RiskLevel.LOW


def escalation_tier_for(level: RiskLevel) -> EscalationTier:
    if level == RiskLevel.CRITICAL:
        return EscalationTier.CRISIS_TEAM
    if level in (RiskLevel.HIGH, RiskLevel.MEDIUM):
        return EscalationTier.TEAM_NOTIFY
    return EscalationTier.NONE


def weighted_confidence(triggers: Sequence[DetectionTrigger]) -> float:
    """Severity-weighted mean of trigger confidences, capped at 1.0."""
    total_weight = sum(SEVERITY_WEIGHTS[t.severity] for t in triggers)
    if total_weight <= 0:
        return 0.0
    score = sum(t.confidence * SEVERITY_WEIGHTS[t.severity] for t in triggers) / total_weight
    return min(score, 1.0)


def context_boost(context: ContextFactors, config: DetectionConfig) -> float:
    boost = 0.0
    if is_late_night(context.time_of_day):
        boost += config.time_factor_weight
    history_signal = min(1.0, context.previous_alerts / HISTORY_SATURATION_ALERTS)
    if context.user_history.has_history:
        history_signal = max(history_signal, 0.5)
    boost += config.user_history_weight * history_signal
    return boost


def build_recommendations(
    level: RiskLevel,
    categories: Iterable[CrisisCategory],
    context: Optional[ContextFactors],
) -> List[str]:
    recs: List[str] = []
    if level == RiskLevel.CRITICAL:
        recs += [
            "Immediate intervention required",
            "Contact emergency services if imminent danger",
            "Ensure user safety and continuous monitoring",
        ]
    elif level == RiskLevel.HIGH:
        recs += [
            "Urgent therapeutic intervention needed",
            "Contact assigned therapist immediately",
            "Consider safety planning session",
        ]
    elif level == RiskLevel.MEDIUM:
        recs.append("Schedule a check-in with the assigned therapist")

    categories = set(categories)
    if CrisisCategory.SUICIDE in categories:
        recs += ["Conduct suicide risk assessment", "Implement suicide prevention protocol"]
    if CrisisCategory.SELF_HARM in categories:
        recs.append("Review self-harm safety plan")

    if context is not None and (context.user_history.has_history or context.previous_alerts > 0):
        recs += ["Review previous intervention strategies", "Consider escalating care level"]
    return recs


# =============================================================================
# MATCHING
# =============================================================================

def _phrase_in(tokens: Sequence[str], token_set: frozenset, phrase: str) -> bool:
    parts = tokenize(phrase)
    if not parts:
        return False
    if len(parts) == 1:
        return parts[0] in token_set
    if parts[0] not in token_set:
        return False
    n = len(parts)
    return any(list(tokens[i:i + n]) == parts for i in range(len(tokens) - n + 1))


def match_keywords(tokens: Sequence[str], keywords: Iterable[CrisisKeyword]) -> List[DetectionTrigger]:
    token_set = frozenset(tokens)
    triggers = []
    for kw in keywords:
        if not _phrase_in(tokens, token_set, kw.word):
            continue
        if any(_phrase_in(tokens, token_set, exc) for exc in kw.exclusions):
            continue
        if kw.context and not any(_phrase_in(tokens, token_set, ctx) for ctx in kw.context):
            continue
        triggers.append(DetectionTrigger(
            type=TriggerType.KEYWORD,
            value=kw.word,
            confidence=kw.weight,
            category=kw.category,
            severity=kw.severity,
        ))
    return triggers


def _within_window(positions: List[int], min_matches: int, window: int) -> bool:
    for i in range(len(positions) - min_matches + 1):
        if positions[i + min_matches - 1] - positions[i] < window:
            return True
    return False


def match_patterns(text: str, patterns: Iterable[CompiledPattern]) -> List[DetectionTrigger]:
    triggers = []
    for compiled in patterns:
        rule = compiled.rule
        # token index at which each match starts
        positions = [len(text[:m.start()].split()) for m in compiled.regex.finditer(text)]
        if len(positions) < rule.min_matches:
            continue
        if rule.min_matches > 1 and not _within_window(positions, rule.min_matches, rule.context_window):
            continue
        triggers.append(DetectionTrigger(
            type=TriggerType.PATTERN,
            value=rule.name,
            confidence=rule.weight,
            category=rule.category,
            severity=rule.severity,
        ))
    return triggers


def _ordered_categories(triggers: Iterable[DetectionTrigger]) -> List[CrisisCategory]:
    seen: List[CrisisCategory] = []
    for t in triggers:
        if t.category not in seen:
            seen.append(t.category)
    return seen


# =============================================================================
# SERVICE
# =============================================================================

class CrisisDetectionService:
    HISTORY_LIMIT = 1000

    def __init__(
        self,
        keyword_store: KeywordStore,
        context_service: ContextService,
        bus: EventBus,
        scheduler: TaskScheduler,
        *,
        config: Optional[DetectionConfig] = None,
        intervention_logger=None,
        store: Optional[DetectionStore] = None,
    ) -> None:
        self._rules = keyword_store
        self._context = context_service
        self._bus = bus
        self._scheduler = scheduler
        self._config = config or DetectionConfig()
        self._audit = intervention_logger
        self._store = store
        self._history: Deque[DetectionResult] = deque(maxlen=self.HISTORY_LIMIT)
        self._queue: "asyncio.Queue[dict]" = asyncio.Queue()
        self._batch_task: Optional[asyncio.Task] = None

    @property
    def config(self) -> DetectionConfig:
        return self._config

    async def initialize(self) -> None:
        snapshot = await self._rules.load()
        self._bus.emit(events.ENGINE_INITIALIZED, {
            "keywords": snapshot.keyword_count,
            "patterns": len(snapshot.patterns),
        })

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze_message(
        self,
        content: str,
        user_id: str,
        conversation_id: str,
        *,
        message_id: Optional[str] = None,
        language: str = "en",
    ) -> Optional[DetectionResult]:
        config = self._config
        if not config.enabled or not content or not content.strip():
            return None

        try:
            result = await self._analyze(
                config, self._rules.snapshot, content, user_id, conversation_id,
                message_id or new_id("msg"), language.lower(),
            )
        except Exception as exc:
            logger.exception("[detection] analysis failed for message %s", message_id)
            self._bus.emit(events.ANALYSIS_ERROR, {
                "message_id": message_id,
                "user_id": user_id,
                "error": str(exc),
            })
            return None

        if result is None:
            return None

        self._history.append(result)
        self._bus.emit(events.CRISIS_DETECTED, result)
        self._record(result)
        logger.info(
            "[detection] %s risk for user %s (confidence %.2f, %d triggers)",
            result.risk_level.value, user_id, result.confidence, len(result.triggers),
        )
        return result

    async def _analyze(
        self,
        config: DetectionConfig,
        snapshot: RuleSnapshot,
        content: str,
        user_id: str,
        conversation_id: str,
        message_id: str,
        language: str,
    ) -> Optional[DetectionResult]:
        text = clean_text(content)
        tokens = tokenize(content)

        triggers: List[DetectionTrigger] = []
        if config.keyword_detection:
            triggers += match_keywords(tokens, snapshot.keywords_for(language))
        if config.pattern_detection:
            triggers += match_patterns(text, snapshot.patterns)
        if not triggers:
            return None

        confidence = weighted_confidence(triggers)
        if confidence < config.confidence_threshold:
            return None

        highest = _max_level(*(t.severity for t in triggers))
        risk = _max_level(level_for_confidence(confidence), highest)

        context: Optional[ContextFactors] = None
        if config.context_analysis:
            context = await self._context.get_context(user_id, conversation_id)
            if context is not None:
                confidence = min(1.0, confidence + context_boost(context, config))
                risk = _max_level(risk, level_for_confidence(confidence))

        categories = _ordered_categories(triggers)
        return DetectionResult(
            id=new_id("det"),
            message_id=message_id,
            user_id=str(user_id),
            conversation_id=str(conversation_id),
            content=sanitize_pii(content),
            confidence=round(confidence, 4),
            risk_level=risk,
            categories=categories,
            triggers=triggers,
            context_factors=context,
            requires_immediate=risk == RiskLevel.CRITICAL,
            escalation_level=escalation_tier_for(risk),
            recommendations=build_recommendations(risk, categories, context),
        )

    def _record(self, result: DetectionResult) -> None:
        """Audit log + persistence; neither may fail the analysis call."""
        if self._audit is not None:
            self._audit.log_crisis_event(CrisisEventCreate(
                user_id=result.user_id,
                event_type=CrisisEventType.CRISIS_DETECTED,
                severity=EventSeverity(result.risk_level.value),
                detection_id=result.id,
                context={
                    "trigger_data": {
                        "confidence": result.confidence,
                        "categories": [c.value for c in result.categories],
                        "triggers": [t.value for t in result.triggers],
                        "message_id": result.message_id,
                        "conversation_id": result.conversation_id,
                    }
                },
                tags=["detection", result.escalation_level.value],
            ))
        if self._store is not None:
            self._scheduler.spawn(self._store.save_detection(result), name=f"save-detection:{result.id}")

    # ------------------------------------------------------------------
    # Batch analysis
    # ------------------------------------------------------------------

    def queue_for_analysis(
        self,
        content: str,
        user_id: str,
        conversation_id: str,
        *,
        message_id: Optional[str] = None,
        language: str = "en",
    ) -> bool:
        if not self._config.batch_analysis:
            return False
        self._queue.put_nowait({
            "content": content,
            "user_id": user_id,
            "conversation_id": conversation_id,
            "message_id": message_id,
            "language": language,
        })
        return True

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._batch_task is None or self._batch_task.done():
            self._batch_task = asyncio.create_task(self._batch_worker(), name="detection-batch")

    async def stop(self) -> None:
        if self._batch_task is not None:
            self._batch_task.cancel()
            try:
                await self._batch_task
            except asyncio.CancelledError:
                pass
            self._batch_task = None

    async def process_batch(self) -> List[DetectionResult]:
        batch = []
        while not self._queue.empty() and len(batch) < self._config.batch_size:
            batch.append(self._queue.get_nowait())
        if not batch:
            return []
        results = await asyncio.gather(*(
            self.analyze_message(
                item["content"], item["user_id"], item["conversation_id"],
                message_id=item["message_id"], language=item["language"],
            )
            for item in batch
        ))
        return [r for r in results if r is not None]

    async def _batch_worker(self) -> None:
        while True:
            await asyncio.sleep(self._config.batch_interval_seconds)
            await self.process_batch()

    # ------------------------------------------------------------------
    # History / config
    # ------------------------------------------------------------------

    async def get_detection_history(self, filters: Optional[DetectionFilters] = None) -> List[DetectionResult]:
        filters = filters or DetectionFilters()
        if self._store is not None:
            return await self._store.query_detections(filters)

        out = []
        for result in reversed(self._history):
            if filters.user_id and result.user_id != filters.user_id:
                continue
            if filters.conversation_id and result.conversation_id != filters.conversation_id:
                continue
            if filters.risk_level and result.risk_level != filters.risk_level:
                continue
            if filters.date_from and as_utc(result.detected_at) < as_utc(filters.date_from):
                continue
            if filters.date_to and as_utc(result.detected_at) > as_utc(filters.date_to):
                continue
            out.append(result)
            if len(out) >= filters.limit:
                break
        return out

    def update_config(self, changes: DetectionConfigUpdate) -> DetectionConfig:
        update = changes.model_dump(exclude_none=True)
        self._config = self._config.model_copy(update=update)
        logger.info("[detection] config updated: %s", sorted(update))
        self._bus.emit(events.CONFIG_UPDATED, {"changes": update, "at": utcnow()})
        return self._config

    async def destroy(self) -> None:
        await self.stop()
        self._history.clear()
