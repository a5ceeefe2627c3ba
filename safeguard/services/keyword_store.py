"""
Keyword / pattern store.

Holds the crisis rules the detection engine matches against as an immutable
``RuleSnapshot``. ``load()`` builds a new snapshot and swaps the reference in
one assignment, so concurrent analyses always see either the old or the new
rule set, never a half-loaded one.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from safeguard.core import events
from safeguard.core.events import EventBus
from safeguard.schemas.detection import CrisisKeyword, CrisisPattern
from safeguard.services.interfaces import ReferenceDataSource
from safeguard.utils.crisis_lexicon import DEFAULT_KEYWORDS, DEFAULT_PATTERNS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledPattern:
    rule: CrisisPattern
    regex: re.Pattern


@dataclass(frozen=True)
class RuleSnapshot:
    keywords: Mapping[str, Tuple[CrisisKeyword, ...]] = field(default_factory=lambda: MappingProxyType({}))
    patterns: Tuple[CompiledPattern, ...] = ()
    keywords_loaded: bool = False
    patterns_loaded: bool = False

    def keywords_for(self, language: str) -> Tuple[CrisisKeyword, ...]:
        return self.keywords.get(language, ())

    @property
    def keyword_count(self) -> int:
        return sum(len(v) for v in self.keywords.values())


def partition_keywords(keywords: Sequence[CrisisKeyword]) -> Mapping[str, Tuple[CrisisKeyword, ...]]:
    by_lang: Dict[str, List[CrisisKeyword]] = {}
    for kw in keywords:
        by_lang.setdefault(kw.language.lower(), []).append(kw)
    return MappingProxyType({lang: tuple(items) for lang, items in by_lang.items()})


def compile_patterns(patterns: Sequence[CrisisPattern]) -> Tuple[CompiledPattern, ...]:
    compiled = []
    for rule in patterns:
        try:
            compiled.append(CompiledPattern(rule=rule, regex=re.compile(rule.pattern, re.IGNORECASE)))
        except re.error as exc:
            logger.warning("[rules] skipping invalid pattern %s: %s", rule.id, exc)
    return tuple(compiled)


class KeywordStore:
    def __init__(
        self,
        source: Optional[ReferenceDataSource] = None,
        *,
        bus: Optional[EventBus] = None,
        timeout: float = 1.5,
        use_defaults: bool = True,
    ) -> None:
        self._source = source
        self._bus = bus
        self._timeout = timeout
        self._use_defaults = use_defaults
        self._snapshot = RuleSnapshot()
        if bus is not None:
            bus.on(events.CONFIG_UPDATED, self._on_config_updated)

    @property
    def snapshot(self) -> RuleSnapshot:
        return self._snapshot

    async def load(self) -> RuleSnapshot:
        """Fetch keywords and patterns independently; a failed kind keeps its previous rules."""
        previous = self._snapshot
        if self._source is None:
            keywords: Optional[List[CrisisKeyword]] = list(DEFAULT_KEYWORDS) if self._use_defaults else []
            patterns: Optional[List[CrisisPattern]] = list(DEFAULT_PATTERNS) if self._use_defaults else []
        else:
            keywords, patterns = await asyncio.gather(
                self._fetch("keywords", self._source.fetch_keywords),
                self._fetch("patterns", self._source.fetch_patterns),
            )

        snapshot = RuleSnapshot(
            keywords=partition_keywords(keywords) if keywords is not None else previous.keywords,
            patterns=compile_patterns(patterns) if patterns is not None else previous.patterns,
            keywords_loaded=keywords is not None or previous.keywords_loaded,
            patterns_loaded=patterns is not None or previous.patterns_loaded,
        )
        self._snapshot = snapshot
        logger.info(
            "[rules] loaded %d keywords, %d patterns",
            snapshot.keyword_count,
            len(snapshot.patterns),
        )
        if self._bus is not None:
            self._bus.emit(events.RULES_RELOADED, {
                "keywords": snapshot.keyword_count,
                "patterns": len(snapshot.patterns),
            })
        return snapshot

    def replace(
        self,
        *,
        keywords: Optional[Sequence[CrisisKeyword]] = None,
        patterns: Optional[Sequence[CrisisPattern]] = None,
    ) -> RuleSnapshot:
        """Swap in rules directly (admin tooling and tests)."""
        current = self._snapshot
        self._snapshot = RuleSnapshot(
            keywords=partition_keywords(keywords) if keywords is not None else current.keywords,
            patterns=compile_patterns(patterns) if patterns is not None else current.patterns,
            keywords_loaded=True if keywords is not None else current.keywords_loaded,
            patterns_loaded=True if patterns is not None else current.patterns_loaded,
        )
        return self._snapshot

    async def _fetch(self, kind: str, fetcher) -> Optional[list]:
        try:
            return list(await asyncio.wait_for(fetcher(), timeout=self._timeout))
        except asyncio.TimeoutError:
            logger.warning("[rules] %s fetch timed out after %.1fs", kind, self._timeout)
        except Exception as exc:
            logger.warning("[rules] %s fetch failed: %s", kind, exc)
        return None

    async def _on_config_updated(self, _data) -> None:
        await self.load()
