"""
RuleEngine - hierarchical business-rule validation.

Responsibilities:
1. Rule catalog: registration and versioned revision, with dependency
   checks (unknown codes and cycles are rejected at registration time)
2. Configuration resolution: the most specific eligible configuration
   wins (user_group > auction > auction_type > global), then the higher
   priority, then the newest
3. Evaluation: applicable rules run in dependency order; a rule whose
   dependency failed is skipped
4. Violations: recording, acknowledge / resolve / dismiss, and the
   time-based escalation sweep
"""

import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

import networkx as nx

from gavel.core.config import EngineConfig
from gavel.core.errors import NotFoundError, RuleConfigurationError, ValidationError
from gavel.core.market.types import Auction, now_ms
from gavel.core.rules import conditions
from gavel.core.rules.models import (
    ConfigScope,
    Rule,
    RuleCategory,
    RuleConfiguration,
    RuleResult,
    RuleViolation,
    Severity,
    ViolationStatus,
    ViolationType,
)
from gavel.utils.logger import get_logger
from gavel.utils.validation import CreateRuleRequest, RuleConfigurationRequest, parse_request

if TYPE_CHECKING:
    from gavel.core.storage.store import AuctionStore, StoreTransaction

logger = get_logger("rules")

# Fields a revision may change
REVISABLE_FIELDS = frozenset({
    "name",
    "description",
    "category",
    "severity",
    "auction_types",
    "condition",
    "default_parameters",
    "error_message",
    "dependencies",
    "is_active",
    "effective_from",
    "effective_until",
})


def dependency_graph(rules: Iterable[Rule]) -> nx.DiGraph:
    """Directed graph with an edge dependency -> dependent, keyed by rule code."""
    graph = nx.DiGraph()
    for rule in rules:
        graph.add_node(rule.rule_code)
        for dep in rule.dependencies:
            graph.add_edge(dep, rule.rule_code)
    return graph


class RuleEngine:
    """
    Rule catalog, configuration resolution and violation tracking.

    Methods that take a `tx` run inside the caller's transaction; the
    others open their own.
    """

    def __init__(self, store: "AuctionStore", config: EngineConfig):
        self.store = store
        self.config = config
        self.escalation_threshold = Severity(config.escalation_threshold)

    # =========================================================================
    # Catalog
    # =========================================================================

    def _check_dependencies(self, tx: "StoreTransaction", candidate: Rule) -> None:
        rules = {r.rule_code: r for r in tx.list_rules()}
        unknown = [code for code in candidate.dependencies if code not in rules and code != candidate.rule_code]
        if unknown:
            raise RuleConfigurationError(
                f"Rule {candidate.rule_code} depends on unknown rules: {', '.join(sorted(unknown))}",
                field="dependencies",
                context={"rule_code": candidate.rule_code, "unknown": sorted(unknown)},
            )

        rules[candidate.rule_code] = candidate
        graph = dependency_graph(rules.values())
        if not nx.is_directed_acyclic_graph(graph):
            cycle = [edge[0] for edge in nx.find_cycle(graph)]
            raise RuleConfigurationError(
                f"Dependency cycle: {' -> '.join(cycle + cycle[:1])}",
                field="dependencies",
                context={"rule_code": candidate.rule_code, "cycle": cycle},
            )

    def register_rule(self, request: Any) -> Rule:
        """
        Add a rule to the catalog.

        Raises:
            ValidationError: malformed request or duplicate rule code
            RuleConfigurationError: bad condition, unknown dependency or cycle
        """
        req = parse_request(CreateRuleRequest, request)
        conditions.validate_condition(req.condition)

        now = now_ms()
        rule = Rule(
            rule_id=uuid.uuid4().hex,
            rule_code=req.rule_code,
            name=req.name,
            description=req.description,
            category=req.category,
            severity=req.severity,
            auction_types=[t.value for t in req.auction_types],
            condition=req.condition,
            default_parameters=req.default_parameters,
            error_message=req.error_message,
            dependencies=list(req.dependencies),
            is_active=req.is_active,
            effective_from=req.effective_from,
            effective_until=req.effective_until,
            created_at=now,
            updated_at=now,
        )

        with self.store.transaction() as tx:
            if tx.get_rule_by_code(rule.rule_code) is not None:
                raise ValidationError(
                    f"Rule code {rule.rule_code} already registered",
                    field="rule_code",
                    code="DUPLICATE_RULE_CODE",
                )
            self._check_dependencies(tx, rule)
            tx.insert_rule(rule)

        logger.info(f"Registered rule {rule.rule_code} ({rule.severity.value})")
        return rule

    def revise_rule(self, rule_id: str, **changes: Any) -> Rule:
        """
        Edit a rule, producing the next version.

        Violations keep the version they were raised against.
        """
        unknown = set(changes) - REVISABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot revise fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if "condition" in changes:
            conditions.validate_condition(changes["condition"])
        if "severity" in changes:
            changes["severity"] = Severity(changes["severity"])
        if "category" in changes:
            changes["category"] = RuleCategory(changes["category"])

        with self.store.transaction() as tx:
            rule = self._require_rule(tx, rule_id)
            revised = replace(rule, **changes)
            if "dependencies" in changes:
                self._check_dependencies(tx, revised)
            revised = tx.update_rule(revised, expected_version=rule.version)

        logger.info(f"Revised rule {revised.rule_code} to version {revised.version}")
        return revised

    def get_rule(self, rule_id: str) -> Rule:
        with self.store.transaction(write=False) as tx:
            return self._require_rule(tx, rule_id)

    def list_rules(self, active_only: bool = False) -> List[Rule]:
        with self.store.transaction(write=False) as tx:
            return tx.list_rules(active_only=active_only)

    @staticmethod
    def _require_rule(tx: "StoreTransaction", rule_id: str) -> Rule:
        rule = tx.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found", field="rule_id")
        return rule

    # =========================================================================
    # Configurations
    # =========================================================================

    def add_configuration(self, request: Any) -> RuleConfiguration:
        """Attach a scoped parameter set to a rule."""
        req = parse_request(RuleConfigurationRequest, request)
        config = RuleConfiguration(
            config_id=uuid.uuid4().hex,
            rule_id=req.rule_id,
            scope=req.scope,
            config_values=req.config_values,
            auction_id=req.auction_id,
            auction_type=req.auction_type.value if req.auction_type else None,
            scope_value=req.scope_value,
            priority=req.priority,
            is_active=req.is_active,
            requires_approval=req.requires_approval,
            effective_from=req.effective_from,
            effective_until=req.effective_until,
        )
        with self.store.transaction() as tx:
            self._require_rule(tx, config.rule_id)
            if config.auction_id is not None:
                tx.require_auction(config.auction_id)
            tx.insert_configuration(config)

        logger.info(
            f"Configuration {config.config_id[:8]} added for rule {config.rule_id[:8]} "
            f"scope={config.scope.value} priority={config.priority}"
        )
        return config

    def approve_configuration(self, config_id: str, approver: str) -> RuleConfiguration:
        with self.store.transaction() as tx:
            config = tx.get_configuration(config_id)
            if config is None:
                raise NotFoundError(f"Configuration {config_id} not found", field="config_id")
            approved = replace(config, approved_by=approver, approved_at=now_ms())
            tx.update_configuration(approved)
        logger.info(f"Configuration {config_id[:8]} approved by {approver}")
        return approved

    @staticmethod
    def _matches(config: RuleConfiguration, auction: Optional[Auction], user_groups: Sequence[str]) -> bool:
        if config.scope == ConfigScope.GLOBAL:
            return True
        if auction is None:
            return False
        if config.scope == ConfigScope.AUCTION_TYPE:
            return config.auction_type == auction.auction_type.value
        if config.scope == ConfigScope.AUCTION:
            return config.auction_id == auction.auction_id
        if config.scope == ConfigScope.USER_GROUP:
            if config.scope_value not in user_groups:
                return False
            if config.auction_id is not None and config.auction_id != auction.auction_id:
                return False
            if config.auction_type is not None and config.auction_type != auction.auction_type.value:
                return False
            return True
        return False

    def resolve_configuration(
        self,
        tx: "StoreTransaction",
        rule: Rule,
        auction: Optional[Auction],
        user_groups: Sequence[str] = (),
        now: Optional[int] = None,
    ) -> Optional[RuleConfiguration]:
        """Most specific eligible configuration, then highest priority, then newest."""
        at = now_ms() if now is None else now
        candidates = [
            c for c in tx.list_configurations(rule.rule_id)
            if c.is_eligible(at) and self._matches(c, auction, user_groups)
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda c: (c.scope.specificity, c.priority, c.created_at, c.config_id),
        )

    def get_effective_configuration(
        self,
        rule_id: str,
        auction_id: Optional[str] = None,
        user_groups: Sequence[str] = (),
        now: Optional[int] = None,
    ) -> Optional[RuleConfiguration]:
        with self.store.transaction(write=False) as tx:
            rule = self._require_rule(tx, rule_id)
            auction = tx.require_auction(auction_id) if auction_id else None
            return self.resolve_configuration(tx, rule, auction, user_groups, now)

    @staticmethod
    def parameters(rule: Rule, config: Optional[RuleConfiguration]) -> Dict[str, Any]:
        """Rule defaults overlaid with the configuration's values."""
        params = dict(rule.default_parameters)
        if config is not None:
            params.update(config.config_values)
        return params

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(
        self,
        rule: Rule,
        context: Dict[str, Any],
        config: Optional[RuleConfiguration] = None,
    ) -> RuleResult:
        """Evaluate one rule; `context["config"]` is filled from the configuration."""
        params = self.parameters(rule, config)
        if params.get("enabled") is False:
            return RuleResult(rule=rule, passed=True, config=config, skipped=True, message="disabled")

        data = dict(context)
        data["config"] = params
        passed = bool(conditions.evaluate(rule.condition, data))
        if passed:
            return RuleResult(rule=rule, passed=True, config=config)

        expected, actual = conditions.explain(rule.condition, data)
        return RuleResult(
            rule=rule,
            passed=False,
            expected=expected,
            actual=actual,
            config=config,
            message=rule.error_message or f"Rule {rule.rule_code} failed",
        )

    def evaluate_bid(
        self,
        tx: "StoreTransaction",
        auction: Auction,
        context: Dict[str, Any],
        user_groups: Sequence[str] = (),
        now: Optional[int] = None,
    ) -> List[RuleResult]:
        """
        Evaluate every applicable rule for a bid, in dependency order.

        Rules whose dependency failed (or was itself skipped after a failure)
        are reported as skipped.
        """
        at = now_ms() if now is None else now
        applicable = {
            r.rule_code: r for r in tx.list_rules(active_only=True)
            if r.applies_to(auction.auction_type.value, at)
        }
        graph = dependency_graph(applicable.values())

        results: List[RuleResult] = []
        blocked = set()
        for code in nx.lexicographical_topological_sort(graph):
            rule = applicable.get(code)
            if rule is None:
                continue
            if any(dep in blocked for dep in rule.dependencies):
                blocked.add(code)
                results.append(RuleResult(rule=rule, passed=False, skipped=True, message="dependency failed"))
                continue

            config = self.resolve_configuration(tx, rule, auction, user_groups, at)
            result = self.evaluate(rule, context, config)
            results.append(result)
            if not result.passed:
                blocked.add(code)
                logger.debug(f"Rule {code} failed for auction {auction.auction_id[:8]}: {result.actual}")

        return results

    @staticmethod
    def failures(results: Iterable[RuleResult]) -> List[RuleResult]:
        """Evaluated (not skipped) failures."""
        return [r for r in results if not r.passed and not r.skipped]

    # =========================================================================
    # Violations
    # =========================================================================

    def record_violation(
        self,
        tx: "StoreTransaction",
        result: RuleResult,
        auction_id: Optional[str],
        user_id: Optional[str],
        bid_id: Optional[str] = None,
        now: Optional[int] = None,
    ) -> RuleViolation:
        at = now_ms() if now is None else now
        rule = result.rule
        escalates = rule.severity.rank >= self.escalation_threshold.rank
        violation = RuleViolation(
            violation_id=uuid.uuid4().hex,
            rule_id=rule.rule_id,
            rule_version=rule.version,
            config_id=result.config.config_id if result.config else None,
            auction_id=auction_id,
            user_id=user_id,
            bid_id=bid_id,
            violation_type=ViolationType.HARD if rule.severity.blocking else ViolationType.SOFT,
            severity=rule.severity,
            message=result.message,
            expected_values=result.expected,
            actual_values=result.actual,
            next_escalation_at=at + self.config.escalation_delay_seconds * 1000 if escalates else None,
            occurred_at=at,
        )
        tx.insert_violation(violation)
        logger.warning(
            f"Violation {violation.violation_type.value} of {rule.rule_code} "
            f"(auction={auction_id}, user={user_id})"
        )
        return violation

    def _transition(
        self,
        violation_id: str,
        status: ViolationStatus,
        by: Optional[str],
        resolution: Optional[str] = None,
    ) -> RuleViolation:
        with self.store.transaction() as tx:
            violation = tx.get_violation(violation_id)
            if violation is None:
                raise NotFoundError(f"Violation {violation_id} not found", field="violation_id")
            if not violation.is_open:
                raise ValidationError(
                    f"Violation {violation_id} is already {violation.status.value}",
                    field="status",
                    code="VIOLATION_CLOSED",
                )
            changes: Dict[str, Any] = {"status": status}
            if status in (ViolationStatus.RESOLVED, ViolationStatus.DISMISSED):
                changes.update(
                    resolution=resolution,
                    resolved_by=by,
                    resolved_at=now_ms(),
                    next_escalation_at=None,
                )
            updated = tx.update_violation(replace(violation, **changes))
        logger.info(f"Violation {violation_id[:8]} -> {status.value}")
        return updated

    def acknowledge(self, violation_id: str, by: str) -> RuleViolation:
        return self._transition(violation_id, ViolationStatus.ACKNOWLEDGED, by)

    def resolve(self, violation_id: str, resolution: str, by: str) -> RuleViolation:
        return self._transition(violation_id, ViolationStatus.RESOLVED, by, resolution)

    def dismiss(self, violation_id: str, reason: str, by: str) -> RuleViolation:
        return self._transition(violation_id, ViolationStatus.DISMISSED, by, reason)

    def list_violations(
        self,
        auction_id: Optional[str] = None,
        status: Optional[ViolationStatus] = None,
    ) -> List[RuleViolation]:
        with self.store.transaction(write=False) as tx:
            return tx.list_violations(auction_id=auction_id, status=status)

    def sweep_escalations(self, now: Optional[int] = None) -> List[RuleViolation]:
        """
        Escalate unresolved violations whose escalation time has passed.

        Each escalation raises `escalation_level` by one and doubles the delay
        before the next, up to `max_escalation_level`.
        """
        at = now_ms() if now is None else now
        base_ms = self.config.escalation_delay_seconds * 1000
        escalated = []
        with self.store.transaction() as tx:
            for violation in tx.list_due_escalations(at):
                level = violation.escalation_level + 1
                next_at = None
                if level < self.config.max_escalation_level:
                    next_at = at + base_ms * (2 ** level)
                updated = replace(
                    violation,
                    status=ViolationStatus.ESCALATED,
                    escalation_level=level,
                    next_escalation_at=next_at,
                )
                tx.update_violation(updated)
                escalated.append(updated)
                logger.warning(
                    f"Escalated violation {violation.violation_id[:8]} to level {level} "
                    f"(severity={violation.severity.value}, auction={violation.auction_id})"
                )
        if escalated:
            logger.info(f"Escalation sweep: {len(escalated)} violation(s) escalated")
        return escalated
