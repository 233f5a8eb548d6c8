"""Matching rule and deduplication strategy configuration.

Rules and strategies are validated before they are stored; only stored
definitions take part in detection and merging.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from dedup_engine.dedup.strategies import DeduplicationStrategy, default_strategies
from dedup_engine.errors import InvalidRuleError, RuleNotFound
from dedup_engine.events import EventBus, EventType
from dedup_engine.matching.rules import UNIVERSAL_RECORD_TYPE, MatchingRule, default_matching_rules
from dedup_engine.store import MATCHING_RULE_NS, STRATEGY_NS, RecordStore, make_key
from dedup_engine.utils.logger import log_error, log_info, log_warning

RuleInput = Union[MatchingRule, Dict[str, Any]]
StrategyInput = Union[DeduplicationStrategy, Dict[str, Any]]


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}" for err in exc.errors()
    )


class RuleRegistry:
    """CRUD and lookup for ``MatchingRule`` and ``DeduplicationStrategy``."""

    def __init__(self, store: RecordStore, events: EventBus, rule_ttl_seconds: int = 0):
        self.store = store
        self.events = events
        self.rule_ttl_seconds = rule_ttl_seconds

    # Matching rules

    async def save_rule(self, rule: RuleInput) -> MatchingRule:
        """Validate and store a matching rule.

        Raises:
            InvalidRuleError: Weights, thresholds or fields are invalid.
        """
        try:
            if isinstance(rule, MatchingRule):
                rule = MatchingRule.model_validate(rule.model_dump())
            else:
                rule = MatchingRule.model_validate(rule)
        except ValidationError as exc:
            raise InvalidRuleError(f"Invalid matching rule: {_validation_message(exc)}") from exc

        unknown = rule.unknown_algorithms()
        if unknown:
            log_warning("Rule references unknown algorithms", rule_id=rule.id, algorithms=unknown)

        rule.updated_at = datetime.now()
        await self.store.put(make_key(MATCHING_RULE_NS, rule.id), rule, self.rule_ttl_seconds)
        log_info("Matching rule saved", rule_id=rule.id, record_type=rule.record_type)
        self.events.publish(EventType.RULE_UPDATED, rule_id=rule.id, record_type=rule.record_type)
        return rule

    async def get_rule(self, rule_id: str) -> Optional[MatchingRule]:
        return await self.store.get(make_key(MATCHING_RULE_NS, rule_id))

    async def delete_rule(self, rule_id: str) -> bool:
        deleted = await self.store.delete(make_key(MATCHING_RULE_NS, rule_id))
        if deleted:
            self.events.publish(EventType.RULE_UPDATED, rule_id=rule_id, deleted=True)
        return deleted

    async def list_rules(self, record_type: Optional[str] = None) -> List[MatchingRule]:
        rules = await self.store.load_namespace(MATCHING_RULE_NS)
        if record_type is not None:
            rules = [r for r in rules if r.applies_to(record_type)]
        return sorted(rules, key=lambda r: (r.created_at, r.id))

    async def find_active_rule(self, record_type: str, rule_id: Optional[str] = None) -> MatchingRule:
        """Rule to use for a detection.

        An explicit ``rule_id`` wins. Otherwise the first active rule for the
        record type is used, then the first active universal rule.

        Raises:
            RuleNotFound: No usable rule.
        """
        if rule_id:
            rule = await self.get_rule(rule_id)
            if rule is None:
                raise RuleNotFound(f"Matching rule not found: {rule_id}", rule_id=rule_id)
            return rule

        active = [r for r in await self.list_rules(record_type) if r.is_active]
        specific = [r for r in active if r.record_type == record_type]
        chosen = specific or [r for r in active if r.record_type == UNIVERSAL_RECORD_TYPE]
        if not chosen:
            raise RuleNotFound(
                f"No active matching rule found for record type: {record_type}",
                record_type=record_type,
            )
        return chosen[0]

    # Deduplication strategies

    async def save_strategy(self, strategy: StrategyInput) -> DeduplicationStrategy:
        """Validate and store a strategy; a new default demotes the old one."""
        try:
            if isinstance(strategy, DeduplicationStrategy):
                strategy = DeduplicationStrategy.model_validate(strategy.model_dump())
            else:
                strategy = DeduplicationStrategy.model_validate(strategy)
        except ValidationError as exc:
            raise InvalidRuleError(f"Invalid deduplication strategy: {_validation_message(exc)}") from exc

        if strategy.is_default:
            for other in await self.list_strategies(strategy.record_type):
                if other.id != strategy.id and other.is_default and other.record_type == strategy.record_type:
                    demoted = other.model_copy(update={"is_default": False})
                    await self.store.put(make_key(STRATEGY_NS, other.id), demoted, self.rule_ttl_seconds)
                    log_info("Strategy no longer default", strategy_id=other.id)

        await self.store.put(make_key(STRATEGY_NS, strategy.id), strategy, self.rule_ttl_seconds)
        log_info("Deduplication strategy saved", strategy_id=strategy.id, record_type=strategy.record_type)
        self.events.publish(
            EventType.STRATEGY_UPDATED, strategy_id=strategy.id, record_type=strategy.record_type
        )
        return strategy

    async def get_strategy(self, strategy_id: str) -> Optional[DeduplicationStrategy]:
        return await self.store.get(make_key(STRATEGY_NS, strategy_id))

    async def delete_strategy(self, strategy_id: str) -> bool:
        deleted = await self.store.delete(make_key(STRATEGY_NS, strategy_id))
        if deleted:
            self.events.publish(EventType.STRATEGY_UPDATED, strategy_id=strategy_id, deleted=True)
        return deleted

    async def list_strategies(self, record_type: Optional[str] = None) -> List[DeduplicationStrategy]:
        strategies = await self.store.load_namespace(STRATEGY_NS)
        if record_type is not None:
            strategies = [s for s in strategies if s.record_type == record_type]
        return sorted(strategies, key=lambda s: s.id)

    async def find_strategy(self, record_type: str) -> Optional[DeduplicationStrategy]:
        """Default strategy for the type, else the universal default."""
        for candidate_type in (record_type, UNIVERSAL_RECORD_TYPE):
            for strategy in await self.list_strategies(candidate_type):
                if strategy.is_default:
                    return strategy
        return None

    # Bootstrapping

    async def seed_defaults(self) -> bool:
        """Store the built-in rules and strategies when none exist yet."""
        seeded = False
        if not await self.store.keys(MATCHING_RULE_NS):
            for rule in default_matching_rules():
                await self.save_rule(rule)
            seeded = True
        if not await self.store.keys(STRATEGY_NS):
            for strategy in default_strategies():
                await self.save_strategy(strategy)
            seeded = True
        if seeded:
            log_info("Seeded default matching rules and strategies")
        return seeded

    async def load_rules_file(self, path: Union[str, Path]) -> Tuple[List[MatchingRule], List[DeduplicationStrategy]]:
        """Load ``matching_rules`` and ``strategies`` from a YAML file.

        Every definition is validated before any is stored.
        """
        rules_path = Path(path)
        try:
            with open(rules_path, "r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            log_error("Failed to read rules file", path=str(rules_path), error=str(exc))
            raise InvalidRuleError(f"Cannot read rules file {rules_path}: {exc}") from exc

        try:
            rules = [MatchingRule.model_validate(r) for r in raw.get("matching_rules") or []]
            strategies = [DeduplicationStrategy.model_validate(s) for s in raw.get("strategies") or []]
        except ValidationError as exc:
            raise InvalidRuleError(
                f"Invalid definition in {rules_path}: {_validation_message(exc)}"
            ) from exc

        saved_rules = [await self.save_rule(rule) for rule in rules]
        saved_strategies = [await self.save_strategy(strategy) for strategy in strategies]
        log_info(
            "Loaded rules file",
            path=str(rules_path),
            rule_count=len(saved_rules),
            strategy_count=len(saved_strategies),
        )
        return saved_rules, saved_strategies
