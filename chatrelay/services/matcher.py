from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
import logging
import time
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.config import get_settings
from chatrelay.core.errors import ChatRelayError, MatchError
from chatrelay.domain.events import CanonicalEvent
from chatrelay.domain.models import Channel, Rule
from chatrelay.services.normalizer import canonicalize_event_type
from chatrelay.services.predicates import Predicate, evaluate, parse_predicate
from chatrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMatch:
    rule: Rule
    channel_id: str
    # Resolved endpoint, when channels were loaded; lets fallback delivery skip a store read.
    endpoint_url: str | None = None


@dataclass(frozen=True)
class _CompiledRule:
    rule: Rule
    predicate: Predicate | None


def select_channel(
    rule: Rule,
    channels: Mapping[str, Channel] | None,
    *,
    tenant_id: str,
) -> str | None:
    # Prefer the rule's own channel, then the tenant default; None means unroutable.
    if channels is None:
        return rule.target_channel_id
    target = channels.get(rule.target_channel_id) if rule.target_channel_id else None
    if target is not None and target.active and target.tenant_id == tenant_id:
        return target.id
    for channel in channels.values():
        if channel.is_default and channel.active and channel.tenant_id == tenant_id:
            return channel.id
    return None


class RuleIndex:
    """Enabled rules pre-indexed by (tenant_id, event_type) with compiled predicates."""

    def __init__(self, rules: Iterable[Rule], channels: Mapping[str, Channel] | None = None) -> None:
        self._channels = channels
        self._by_key: dict[tuple[str, str], list[_CompiledRule]] = defaultdict(list)
        self.invalid_rule_ids: list[str] = []
        for rule in rules:
            if not rule.enabled:
                continue
            try:
                event_type = canonicalize_event_type(rule.event_type, allow_wildcard=True)
                predicate = parse_predicate(rule.filter_predicate)
            except ChatRelayError as exc:
                # A broken rule is skipped at build time; siblings keep matching.
                logger.warning("rule_skipped_invalid rule_id=%s tenant_id=%s error=%s", rule.id, rule.tenant_id, exc)
                increment_counter("rules_invalid_total")
                self.invalid_rule_ids.append(rule.id)
                continue
            self._by_key[(rule.tenant_id, event_type)].append(_CompiledRule(rule=rule, predicate=predicate))
        for compiled in self._by_key.values():
            compiled.sort(key=lambda item: (item.rule.priority, item.rule.id))

    def _candidates(self, event: CanonicalEvent) -> list[_CompiledRule]:
        exact = self._by_key.get((event.tenant_id, event.event_type), [])
        wildcard = self._by_key.get((event.tenant_id, f"{event.entity_type}.*"), [])
        if not wildcard:
            return exact
        merged = exact + wildcard
        merged.sort(key=lambda item: (item.rule.priority, item.rule.id))
        return merged

    def match(self, event: CanonicalEvent) -> list[RuleMatch]:
        matches: list[RuleMatch] = []
        for compiled in self._candidates(event):
            rule = compiled.rule
            try:
                if not evaluate(compiled.predicate, event.attributes):
                    continue
            except (MatchError, ArithmeticError) as exc:
                logger.warning(
                    "rule_skipped_predicate_error rule_id=%s event_type=%s error=%s",
                    rule.id,
                    event.event_type,
                    exc,
                )
                increment_counter("rules_predicate_errors_total")
                continue
            channel_id = select_channel(rule, self._channels, tenant_id=event.tenant_id)
            if channel_id is None:
                logger.warning("rule_skipped_unroutable rule_id=%s tenant_id=%s", rule.id, event.tenant_id)
                increment_counter("rules_unroutable_total")
                continue
            channel = self._channels.get(channel_id) if self._channels is not None else None
            matches.append(
                RuleMatch(
                    rule=rule,
                    channel_id=channel_id,
                    endpoint_url=channel.endpoint_url if channel is not None else None,
                )
            )
        return matches


def match(
    event: CanonicalEvent,
    rules: Iterable[Rule],
    channels: Mapping[str, Channel] | None = None,
) -> list[RuleMatch]:
    """Return one (rule, channel_id) pair per enabled rule that matches the event."""
    return RuleIndex(rules, channels).match(event)


@dataclass
class _CacheEntry:
    index: RuleIndex
    loaded_at: float


class RuleCache:
    """Per-tenant RuleIndex cache over the read-only rule/channel store."""

    def __init__(self, *, ttl_s: float | None = None, clock: Any = None) -> None:
        self._ttl_s = float(ttl_s if ttl_s is not None else get_settings().rule_cache_ttl_s)
        self._clock = clock or time.monotonic
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()

    def invalidate(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)

    async def get_index(self, *, session: AsyncSession, tenant_id: str) -> RuleIndex:
        entry = self._entries.get(tenant_id)
        now = self._clock()
        if entry is not None and now - entry.loaded_at < self._ttl_s:
            return entry.index
        async with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is not None and now - entry.loaded_at < self._ttl_s:
                return entry.index
            try:
                index = await self._load(session=session, tenant_id=tenant_id)
            except (SQLAlchemyError, OSError) as exc:
                if entry is None:
                    raise
                # The store is down; matching on the last good rule set lets enqueue
                # fail over to direct delivery instead of rejecting the event.
                await session.rollback()
                logger.warning(
                    "rule_cache_stale_served tenant_id=%s age_s=%.1f error=%s",
                    tenant_id,
                    now - entry.loaded_at,
                    type(exc).__name__,
                )
                increment_counter("rule_cache_stale_served_total")
                return entry.index
            self._entries[tenant_id] = _CacheEntry(index=index, loaded_at=now)
            return index

    async def _load(self, *, session: AsyncSession, tenant_id: str) -> RuleIndex:
        rules = (
            await session.execute(select(Rule).where(Rule.tenant_id == tenant_id, Rule.enabled.is_(True)))
        ).scalars().all()
        channels = (
            await session.execute(select(Channel).where(Channel.tenant_id == tenant_id))
        ).scalars().all()
        # Cached rows outlive this session; detach them so a later rollback cannot expire them.
        for row in (*rules, *channels):
            session.expunge(row)
        return RuleIndex(rules, {channel.id: channel for channel in channels})


_rule_cache: RuleCache | None = None


def get_rule_cache() -> RuleCache:
    global _rule_cache
    if _rule_cache is None:
        _rule_cache = RuleCache()
    return _rule_cache


def reset_rule_cache() -> None:
    # Allow tests and admin hooks to drop cached indexes after rule changes.
    global _rule_cache
    _rule_cache = None
