"""
Unit tests for the rule engine.

Tests cover:
1. Catalog registration, revision and dependency checks
2. Hierarchical configuration resolution
3. Evaluation during bid admission (blocking / warning / info)
4. Violation lifecycle and escalation
"""

import pytest

from gavel.core.config import EngineConfig
from gavel.core.container import build_engine
from gavel.core.errors import BusinessRuleError, RuleConfigurationError, ValidationError
from gavel.core.market.types import now_ms
from gavel.core.outbox.events import InMemoryEventBus, LoggingDeadLetterSink
from gavel.core.rules import ConfigScope, Severity, ViolationStatus, ViolationType
from gavel.core.storage import AuctionStore

ESCALATION_MS = 900_000

MAX_AMOUNT = {"<=": [{"var": "bid.amount"}, {"var": "config.max_amount", "default": 1_000_000}]}


@pytest.fixture
def engine(tmp_path):
    config = EngineConfig(db_path=tmp_path / "rules.db")
    engine = build_engine(config, AuctionStore.open(config.db_path), InMemoryEventBus(), LoggingDeadLetterSink())
    yield engine
    engine.close()


def rule_request(code, severity="error", condition=None, **fields):
    request = {
        "rule_code": code,
        "name": code.replace("_", " ").title(),
        "category": "bidding",
        "severity": severity,
        "condition": condition or MAX_AMOUNT,
        "error_message": f"{code} failed",
    }
    request.update(fields)
    return request


def open_auction(engine, auction_type="english"):
    start = now_ms() + 1_000
    auction = engine.auctions.create_auction(
        {
            "auction_type": auction_type,
            "starting_price": 100,
            "min_increment": 10,
            "start_time": start,
            "end_time": start + 3_600_000,
            "activate": True,
        }
    )
    engine.auctions.activate_due(now=start)
    return engine.auctions.get_auction(auction.auction_id)


def place(engine, auction, bidder, amount, offset_ms=10, groups=()):
    return engine.ledger.place_bid(
        {"auction_id": auction.auction_id, "bidder_id": bidder, "amount": amount, "user_groups": list(groups)},
        now=auction.start_time + offset_ms,
    )


# =============================================================================
# Catalog
# =============================================================================


class TestCatalog:
    """Registration and revision."""

    def test_register(self, engine):
        """Registered rules are listed by code."""
        rule = engine.rules.register_rule(rule_request("max_bid", default_parameters={"max_amount": 1000}))
        assert rule.version == 1
        assert rule.severity == Severity.ERROR
        assert [r.rule_code for r in engine.rules.list_rules()] == ["max_bid"]

    def test_duplicate_code(self, engine):
        """Rule codes are unique."""
        engine.rules.register_rule(rule_request("max_bid"))
        with pytest.raises(ValidationError) as exc:
            engine.rules.register_rule(rule_request("max_bid"))
        assert exc.value.code == "DUPLICATE_RULE_CODE"

    def test_bad_condition(self, engine):
        """Unknown operators fail at registration."""
        with pytest.raises(RuleConfigurationError):
            engine.rules.register_rule(rule_request("odd", condition={"~=": [1, 2]}))

    def test_unknown_dependency(self, engine):
        """Dependencies must name registered rules."""
        with pytest.raises(RuleConfigurationError) as exc:
            engine.rules.register_rule(rule_request("child", dependencies=["ghost"]))
        assert exc.value.context["unknown"] == ["ghost"]

    def test_self_dependency(self, engine):
        """A rule cannot depend on itself."""
        with pytest.raises(RuleConfigurationError):
            engine.rules.register_rule(rule_request("loop", dependencies=["loop"]))

    def test_cycle_rejected_on_revision(self, engine):
        """Revising dependencies into a cycle is refused."""
        parent = engine.rules.register_rule(rule_request("parent"))
        engine.rules.register_rule(rule_request("child", dependencies=["parent"]))
        with pytest.raises(RuleConfigurationError) as exc:
            engine.rules.revise_rule(parent.rule_id, dependencies=["child"])
        assert set(exc.value.context["cycle"]) == {"parent", "child"}

    def test_revision_bumps_version(self, engine):
        """Revisions produce the next version."""
        rule = engine.rules.register_rule(rule_request("max_bid"))
        revised = engine.rules.revise_rule(rule.rule_id, severity="warning", is_active=False)
        assert revised.version == 2
        assert revised.severity == Severity.WARNING
        assert engine.rules.list_rules(active_only=True) == []

    def test_revision_field_whitelist(self, engine):
        """Identity fields cannot be revised."""
        rule = engine.rules.register_rule(rule_request("max_bid"))
        with pytest.raises(ValidationError):
            engine.rules.revise_rule(rule.rule_id, rule_code="other")


# =============================================================================
# Configuration hierarchy
# =============================================================================


class TestConfigurationResolution:
    """Most specific scope, then priority."""

    def test_auction_beats_global_regardless_of_priority(self, engine):
        """Scope specificity outranks priority."""
        auction = open_auction(engine)
        rule = engine.rules.register_rule(rule_request("max_bid"))
        engine.rules.add_configuration(
            {"rule_id": rule.rule_id, "scope": "global", "priority": 100, "config_values": {"max_amount": 1000}}
        )
        local = engine.rules.add_configuration(
            {
                "rule_id": rule.rule_id,
                "scope": "auction",
                "auction_id": auction.auction_id,
                "priority": 0,
                "config_values": {"max_amount": 500},
            }
        )
        effective = engine.rules.get_effective_configuration(rule.rule_id, auction.auction_id)
        assert effective.config_id == local.config_id

    def test_priority_within_scope(self, engine):
        """Inside one scope the higher priority wins."""
        rule = engine.rules.register_rule(rule_request("max_bid"))
        engine.rules.add_configuration({"rule_id": rule.rule_id, "scope": "global", "priority": 1})
        high = engine.rules.add_configuration({"rule_id": rule.rule_id, "scope": "global", "priority": 5})
        engine.rules.add_configuration({"rule_id": rule.rule_id, "scope": "global", "priority": 3})
        assert engine.rules.get_effective_configuration(rule.rule_id).config_id == high.config_id

    def test_scope_order(self, engine):
        """user_group > auction > auction_type > global."""
        auction = open_auction(engine)
        rule = engine.rules.register_rule(rule_request("max_bid"))
        engine.rules.add_configuration({"rule_id": rule.rule_id, "scope": "global"})
        by_type = engine.rules.add_configuration(
            {"rule_id": rule.rule_id, "scope": "auction_type", "auction_type": "english"}
        )
        assert engine.rules.get_effective_configuration(rule.rule_id, auction.auction_id).config_id == by_type.config_id

        by_auction = engine.rules.add_configuration(
            {"rule_id": rule.rule_id, "scope": "auction", "auction_id": auction.auction_id}
        )
        group = engine.rules.add_configuration({"rule_id": rule.rule_id, "scope": "user_group", "scope_value": "vip"})

        assert engine.rules.get_effective_configuration(rule.rule_id, auction.auction_id).config_id == by_auction.config_id
        vip = engine.rules.get_effective_configuration(rule.rule_id, auction.auction_id, user_groups=["vip"])
        assert vip.config_id == group.config_id
        assert vip.scope == ConfigScope.USER_GROUP

    def test_other_type_ignored(self, engine):
        """auction_type configurations only match their type."""
        auction = open_auction(engine)
        rule = engine.rules.register_rule(rule_request("max_bid"))
        engine.rules.add_configuration({"rule_id": rule.rule_id, "scope": "auction_type", "auction_type": "dutch"})
        assert engine.rules.get_effective_configuration(rule.rule_id, auction.auction_id) is None

    def test_approval_gate(self, engine):
        """Configurations awaiting approval are ignored until approved."""
        rule = engine.rules.register_rule(rule_request("max_bid"))
        pending = engine.rules.add_configuration(
            {"rule_id": rule.rule_id, "scope": "global", "requires_approval": True}
        )
        assert engine.rules.get_effective_configuration(rule.rule_id) is None

        engine.rules.approve_configuration(pending.config_id, approver="ops")
        assert engine.rules.get_effective_configuration(rule.rule_id).config_id == pending.config_id

    def test_effective_window(self, engine):
        """Configurations outside their window are ignored."""
        rule = engine.rules.register_rule(rule_request("max_bid"))
        now = now_ms()
        engine.rules.add_configuration(
            {"rule_id": rule.rule_id, "scope": "global", "effective_from": now + 60_000}
        )
        assert engine.rules.get_effective_configuration(rule.rule_id, now=now) is None
        assert engine.rules.get_effective_configuration(rule.rule_id, now=now + 60_000) is not None

    def test_scope_target_required(self, engine):
        """Scoped configurations must name their target."""
        rule = engine.rules.register_rule(rule_request("max_bid"))
        with pytest.raises(ValidationError):
            engine.rules.add_configuration({"rule_id": rule.rule_id, "scope": "auction"})


# =============================================================================
# Evaluation during admission
# =============================================================================


class TestBidEvaluation:
    """Rules applied by the bid ledger."""

    def test_blocking_rule_rejects_and_records(self, engine):
        """ERROR failures block the bid and record a hard violation."""
        auction = open_auction(engine)
        engine.rules.register_rule(rule_request("max_bid", default_parameters={"max_amount": 1000}))

        with pytest.raises(BusinessRuleError) as exc:
            place(engine, auction, "alice", 5000)
        assert exc.value.rule_code == "max_bid"
        assert exc.value.context["actual"] == {"bid.amount": 5000}
        assert exc.value.context["expected"]["config.max_amount"] == 1000

        assert engine.ledger.get_bid_history(auction.auction_id) == []
        [violation] = engine.rules.list_violations(auction_id=auction.auction_id)
        assert violation.violation_type == ViolationType.HARD
        assert violation.bid_id is None
        assert violation.user_id == "alice"

    def test_configuration_parameters_apply(self, engine):
        """The resolved configuration feeds config.* variables."""
        auction = open_auction(engine)
        rule = engine.rules.register_rule(rule_request("max_bid", default_parameters={"max_amount": 1000}))
        engine.rules.add_configuration(
            {
                "rule_id": rule.rule_id,
                "scope": "auction",
                "auction_id": auction.auction_id,
                "config_values": {"max_amount": 10_000},
            }
        )
        assert place(engine, auction, "alice", 5000)

    def test_disabled_by_configuration(self, engine):
        """enabled=false in the configuration skips the rule."""
        auction = open_auction(engine)
        rule = engine.rules.register_rule(rule_request("max_bid", default_parameters={"max_amount": 1000}))
        engine.rules.add_configuration(
            {"rule_id": rule.rule_id, "scope": "global", "config_values": {"enabled": False}}
        )
        assert place(engine, auction, "alice", 5000)

    def test_user_group_override(self, engine):
        """Group members get their group's parameters."""
        auction = open_auction(engine)
        rule = engine.rules.register_rule(rule_request("max_bid", default_parameters={"max_amount": 1000}))
        engine.rules.add_configuration(
            {"rule_id": rule.rule_id, "scope": "user_group", "scope_value": "vip", "config_values": {"max_amount": 9000}}
        )
        assert place(engine, auction, "alice", 5000, groups=["vip"])
        with pytest.raises(BusinessRuleError):
            place(engine, auction, "bob", 6000, offset_ms=20)

    def test_warning_admits_and_records(self, engine):
        """WARNING failures admit the bid and record a soft violation."""
        auction = open_auction(engine)
        engine.rules.register_rule(
            rule_request("big_bid", severity="warning", default_parameters={"max_amount": 1000})
        )
        bid_id = place(engine, auction, "alice", 5000)

        [violation] = engine.rules.list_violations(auction_id=auction.auction_id)
        assert violation.violation_type == ViolationType.SOFT
        assert violation.bid_id == bid_id
        assert violation.next_escalation_at is None

    def test_info_only_logged(self, engine):
        """INFO failures leave no violation."""
        auction = open_auction(engine)
        engine.rules.register_rule(rule_request("note", severity="info", default_parameters={"max_amount": 1}))
        place(engine, auction, "alice", 500)
        assert engine.rules.list_violations() == []

    def test_dependent_skipped_after_failure(self, engine):
        """A rule whose dependency failed is not evaluated."""
        auction = open_auction(engine)
        engine.rules.register_rule(
            rule_request("floor", severity="warning", condition={">=": [{"var": "bid.amount"}, 150]})
        )
        engine.rules.register_rule(
            rule_request(
                "never", severity="warning", condition={"<": [{"var": "bid.amount"}, 0]}, dependencies=["floor"]
            )
        )

        place(engine, auction, "alice", 120)
        codes = {v.rule_id for v in engine.rules.list_violations()}
        floor = next(r for r in engine.rules.list_rules() if r.rule_code == "floor")
        assert codes == {floor.rule_id}

        place(engine, auction, "bob", 200, offset_ms=20)
        assert len(engine.rules.list_violations()) == 2

    def test_type_scoped_rule(self, engine):
        """Rules scoped to other auction types do not apply."""
        auction = open_auction(engine)
        engine.rules.register_rule(
            rule_request("dutch_only", auction_types=["dutch"], default_parameters={"max_amount": 1})
        )
        assert place(engine, auction, "alice", 500)


# =============================================================================
# Violations
# =============================================================================


class TestViolations:
    """Lifecycle and escalation."""

    @pytest.fixture
    def violation(self, engine):
        auction = open_auction(engine)
        engine.rules.register_rule(rule_request("max_bid", default_parameters={"max_amount": 1000}))
        with pytest.raises(BusinessRuleError):
            place(engine, auction, "alice", 5000)
        return engine.rules.list_violations()[0]

    def test_escalation_schedule(self, engine, violation):
        """Each sweep escalates one level and doubles the delay, up to the cap."""
        first_due = violation.occurred_at + ESCALATION_MS
        assert violation.next_escalation_at == first_due
        assert engine.rules.sweep_escalations(now=first_due - 1) == []

        [level1] = engine.rules.sweep_escalations(now=first_due)
        assert level1.status == ViolationStatus.ESCALATED
        assert level1.escalation_level == 1
        assert level1.next_escalation_at == first_due + 2 * ESCALATION_MS

        [level2] = engine.rules.sweep_escalations(now=level1.next_escalation_at)
        assert level2.escalation_level == 2
        assert level2.next_escalation_at == level1.next_escalation_at + 4 * ESCALATION_MS

        [level3] = engine.rules.sweep_escalations(now=level2.next_escalation_at)
        assert level3.escalation_level == 3
        assert level3.next_escalation_at is None
        assert engine.rules.sweep_escalations(now=level2.next_escalation_at + 10 * ESCALATION_MS) == []

    def test_resolved_not_escalated(self, engine, violation):
        """Resolution stops escalation."""
        resolved = engine.rules.resolve(violation.violation_id, resolution="refunded", by="ops")
        assert resolved.status == ViolationStatus.RESOLVED
        assert resolved.resolved_by == "ops"
        assert engine.rules.sweep_escalations(now=violation.occurred_at + 10 * ESCALATION_MS) == []

    def test_acknowledged_still_escalates(self, engine, violation):
        """Acknowledging does not stop the clock."""
        engine.rules.acknowledge(violation.violation_id, by="ops")
        assert len(engine.rules.sweep_escalations(now=violation.next_escalation_at)) == 1

    def test_closed_violation(self, engine, violation):
        """Closed violations cannot transition again."""
        engine.rules.dismiss(violation.violation_id, reason="test bidder", by="ops")
        with pytest.raises(ValidationError) as exc:
            engine.rules.resolve(violation.violation_id, resolution="late", by="ops")
        assert exc.value.code == "VIOLATION_CLOSED"

    def test_violation_keeps_rule_version(self, engine, violation):
        """Revisions do not rewrite recorded violations."""
        engine.rules.revise_rule(violation.rule_id, error_message="changed")
        stored = engine.rules.list_violations()[0]
        assert stored.rule_version == 1
