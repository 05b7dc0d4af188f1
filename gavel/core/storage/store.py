"""
AuctionStore - transactional access to auction state.

All reads and writes go through a `StoreTransaction` obtained from
`AuctionStore.transaction()`; there is no module-level handle. Auction and
bid updates are conditional on the version that was read: a mismatch
raises `ConcurrencyConflict` and nothing is written.

Usage:
    with store.transaction() as tx:
        auction = tx.require_auction(auction_id)
        tx.update_auction(auction, expected_version=auction.version)
        tx.append_event("status_changed", auction_id, {...})
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterator, List, Optional

from gavel.core.errors import ConcurrencyConflict, InfrastructureError, NotFoundError
from gavel.core.market.types import (
    Auction,
    AuctionStatus,
    AuctionType,
    Bid,
    BidSide,
    BidStatus,
    ResultType,
    now_ms,
)
from gavel.core.outbox.events import OutboxEvent
from gavel.core.rules.models import (
    ConfigScope,
    Rule,
    RuleCategory,
    RuleConfiguration,
    RuleViolation,
    Severity,
    ViolationStatus,
    ViolationType,
)
from gavel.core.settlement.record import SettlementRecord
from gavel.core.storage.sqlite_adapter import SQLiteAdapter
from gavel.utils.logger import get_logger

logger = get_logger("storage.store")


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None:
        return default
    return json.loads(raw)


# =============================================================================
# Row mapping
# =============================================================================


def _auction_from_row(row: sqlite3.Row) -> Auction:
    return Auction(
        auction_id=row["auction_id"],
        auction_type=AuctionType(row["auction_type"]),
        title=row["title"],
        starting_price=row["starting_price"],
        reserve_price=row["reserve_price"],
        min_increment=row["min_increment"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=AuctionStatus(row["status"]),
        version=row["version"],
        params=_loads(row["params"], {}),
        created_by=row["created_by"],
        idempotency_key=row["idempotency_key"],
        extension_count=row["extension_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _bid_from_row(row: sqlite3.Row) -> Bid:
    return Bid(
        bid_id=row["bid_id"],
        auction_id=row["auction_id"],
        bidder_id=row["bidder_id"],
        amount=row["amount"],
        quantity=row["quantity"],
        timestamp=row["timestamp"],
        status=BidStatus(row["status"]),
        version=row["version"],
        idempotency_key=row["idempotency_key"],
        side=BidSide(row["side"]) if row["side"] else None,
        package=_loads(row["package"]),
        fee_charged=row["fee_charged"],
        sequence=row["seq"],
    )


def _rule_from_row(row: sqlite3.Row) -> Rule:
    return Rule(
        rule_id=row["rule_id"],
        rule_code=row["rule_code"],
        name=row["name"],
        description=row["description"],
        category=RuleCategory(row["category"]),
        severity=Severity(row["severity"]),
        auction_types=_loads(row["auction_types"], []),
        condition=_loads(row["condition"], {}),
        default_parameters=_loads(row["default_parameters"], {}),
        error_message=row["error_message"],
        dependencies=_loads(row["dependencies"], []),
        is_active=bool(row["is_active"]),
        effective_from=row["effective_from"],
        effective_until=row["effective_until"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _config_from_row(row: sqlite3.Row) -> RuleConfiguration:
    return RuleConfiguration(
        config_id=row["config_id"],
        rule_id=row["rule_id"],
        scope=ConfigScope(row["scope"]),
        auction_id=row["auction_id"],
        auction_type=row["auction_type"],
        scope_value=row["scope_value"],
        config_values=_loads(row["config_values"], {}),
        priority=row["priority"],
        is_active=bool(row["is_active"]),
        requires_approval=bool(row["requires_approval"]),
        approved_by=row["approved_by"],
        approved_at=row["approved_at"],
        effective_from=row["effective_from"],
        effective_until=row["effective_until"],
        created_at=row["created_at"],
    )


def _violation_from_row(row: sqlite3.Row) -> RuleViolation:
    return RuleViolation(
        violation_id=row["violation_id"],
        rule_id=row["rule_id"],
        rule_version=row["rule_version"],
        config_id=row["config_id"],
        auction_id=row["auction_id"],
        user_id=row["user_id"],
        bid_id=row["bid_id"],
        violation_type=ViolationType(row["violation_type"]),
        severity=Severity(row["severity"]),
        message=row["message"],
        expected_values=_loads(row["expected_values"], {}),
        actual_values=_loads(row["actual_values"], {}),
        status=ViolationStatus(row["status"]),
        resolution=row["resolution"],
        resolved_by=row["resolved_by"],
        resolved_at=row["resolved_at"],
        escalation_level=row["escalation_level"],
        next_escalation_at=row["next_escalation_at"],
        occurred_at=row["occurred_at"],
    )


def _event_from_row(row: sqlite3.Row) -> OutboxEvent:
    return OutboxEvent(
        event_id=row["event_id"],
        event_type=row["event_type"],
        auction_id=row["auction_id"],
        payload=_loads(row["payload"], {}),
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        attempts=row["attempts"],
        next_attempt_at=row["next_attempt_at"],
        last_error=row["last_error"],
        dead_lettered_at=row["dead_lettered_at"],
    )


def _settlement_from_row(row: sqlite3.Row) -> SettlementRecord:
    return SettlementRecord(
        auction_id=row["auction_id"],
        result_type=ResultType(row["result_type"]),
        determination_method=row["determination_method"],
        winner_id=row["winner_id"],
        winning_bid_id=row["winning_bid_id"],
        final_price=row["final_price"],
        clearing_price=row["clearing_price"],
        total_value=row["total_value"],
        awards=_loads(row["awards"], []),
        charges=_loads(row["charges"], []),
        forced=bool(row["forced"]),
        settled_at=row["settled_at"],
    )


# =============================================================================
# Transaction
# =============================================================================


class StoreTransaction:
    """
    An open store transaction.

    Only valid inside the `AuctionStore.transaction()` block that produced it.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def _one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        return self._conn.execute(sql, params).fetchone()

    def _all(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        return self._conn.execute(sql, params).fetchall()

    # =========================================================================
    # Auctions
    # =========================================================================

    def get_auction(self, auction_id: str) -> Optional[Auction]:
        row = self._one("SELECT * FROM auctions WHERE auction_id = ?", (auction_id,))
        return _auction_from_row(row) if row else None

    def require_auction(self, auction_id: str) -> Auction:
        auction = self.get_auction(auction_id)
        if auction is None:
            raise NotFoundError(
                f"Auction {auction_id} not found",
                field="auction_id",
                context={"auction_id": auction_id},
            )
        return auction

    def find_auction_by_key(self, idempotency_key: str) -> Optional[Auction]:
        row = self._one("SELECT * FROM auctions WHERE idempotency_key = ?", (idempotency_key,))
        return _auction_from_row(row) if row else None

    def insert_auction(self, auction: Auction) -> Auction:
        self._conn.execute(
            """
            INSERT INTO auctions (
                auction_id, auction_type, title, starting_price, reserve_price,
                min_increment, start_time, end_time, status, version, params,
                created_by, idempotency_key, extension_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                auction.auction_id,
                auction.auction_type.value,
                auction.title,
                auction.starting_price,
                auction.reserve_price,
                auction.min_increment,
                auction.start_time,
                auction.end_time,
                auction.status.value,
                auction.version,
                _dumps(auction.params),
                auction.created_by,
                auction.idempotency_key,
                auction.extension_count,
                auction.created_at,
                auction.updated_at,
            ),
        )
        return auction

    def update_auction(self, auction: Auction, expected_version: int) -> Auction:
        """
        Write the mutable auction fields and bump the version.

        Raises:
            ConcurrencyConflict: the stored version is not `expected_version`
        """
        updated = replace(auction, version=expected_version + 1, updated_at=now_ms())
        cursor = self._conn.execute(
            """
            UPDATE auctions
               SET status = ?, end_time = ?, params = ?, extension_count = ?,
                   version = ?, updated_at = ?
             WHERE auction_id = ? AND version = ?
            """,
            (
                updated.status.value,
                updated.end_time,
                _dumps(updated.params),
                updated.extension_count,
                updated.version,
                updated.updated_at,
                auction.auction_id,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            current = self.get_auction(auction.auction_id)
            raise ConcurrencyConflict(
                "auction",
                auction.auction_id,
                expected_version=expected_version,
                actual_version=current.version if current else None,
            )
        return updated

    def list_auctions(
        self,
        status: Optional[AuctionStatus] = None,
        ends_before: Optional[int] = None,
        starts_before: Optional[int] = None,
    ) -> List[Auction]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if ends_before is not None:
            clauses.append("end_time <= ?")
            params.append(ends_before)
        if starts_before is not None:
            clauses.append("start_time <= ?")
            params.append(starts_before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._all(f"SELECT * FROM auctions {where} ORDER BY end_time, auction_id", tuple(params))
        return [_auction_from_row(r) for r in rows]

    # =========================================================================
    # Bids
    # =========================================================================

    def insert_bid(self, bid: Bid) -> Bid:
        """Insert a bid; returns it with its storage sequence assigned."""
        cursor = self._conn.execute(
            """
            INSERT INTO bids (
                bid_id, auction_id, bidder_id, amount, quantity, timestamp,
                status, version, idempotency_key, side, package, fee_charged
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                bid.bid_id,
                bid.auction_id,
                bid.bidder_id,
                bid.amount,
                bid.quantity,
                bid.timestamp,
                bid.status.value,
                bid.version,
                bid.idempotency_key,
                bid.side.value if bid.side else None,
                _dumps(bid.package) if bid.package else None,
                bid.fee_charged,
            ),
        )
        return replace(bid, sequence=cursor.lastrowid)

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        row = self._one("SELECT * FROM bids WHERE bid_id = ?", (bid_id,))
        return _bid_from_row(row) if row else None

    def find_bid_by_key(self, idempotency_key: str) -> Optional[Bid]:
        row = self._one("SELECT * FROM bids WHERE idempotency_key = ?", (idempotency_key,))
        return _bid_from_row(row) if row else None

    def list_bids(self, auction_id: str) -> List[Bid]:
        """All bids of an auction, earliest first."""
        rows = self._all(
            "SELECT * FROM bids WHERE auction_id = ? ORDER BY timestamp, seq",
            (auction_id,),
        )
        return [_bid_from_row(r) for r in rows]

    def list_bids_by_bidder(self, bidder_id: str) -> List[Bid]:
        rows = self._all(
            "SELECT * FROM bids WHERE bidder_id = ? ORDER BY timestamp, seq",
            (bidder_id,),
        )
        return [_bid_from_row(r) for r in rows]

    def update_bid_status(self, bid: Bid, status: BidStatus) -> Bid:
        """
        Change a bid's status and bump its version.

        Raises:
            ConcurrencyConflict: the bid changed since it was read
        """
        cursor = self._conn.execute(
            "UPDATE bids SET status = ?, version = version + 1 WHERE bid_id = ? AND version = ?",
            (status.value, bid.bid_id, bid.version),
        )
        if cursor.rowcount != 1:
            current = self.get_bid(bid.bid_id)
            raise ConcurrencyConflict(
                "bid",
                bid.bid_id,
                expected_version=bid.version,
                actual_version=current.version if current else None,
            )
        return replace(bid, status=status, version=bid.version + 1)

    # =========================================================================
    # Rules
    # =========================================================================

    def insert_rule(self, rule: Rule) -> Rule:
        self._conn.execute(
            """
            INSERT INTO rules (
                rule_id, rule_code, name, description, category, severity,
                auction_types, condition, default_parameters, error_message,
                dependencies, is_active, effective_from, effective_until,
                version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.rule_id,
                rule.rule_code,
                rule.name,
                rule.description,
                rule.category.value,
                rule.severity.value,
                _dumps(rule.auction_types),
                _dumps(rule.condition),
                _dumps(rule.default_parameters),
                rule.error_message,
                _dumps(rule.dependencies),
                int(rule.is_active),
                rule.effective_from,
                rule.effective_until,
                rule.version,
                rule.created_at,
                rule.updated_at,
            ),
        )
        return rule

    def update_rule(self, rule: Rule, expected_version: int) -> Rule:
        updated = replace(rule, version=expected_version + 1, updated_at=now_ms())
        cursor = self._conn.execute(
            """
            UPDATE rules
               SET name = ?, description = ?, category = ?, severity = ?,
                   auction_types = ?, condition = ?, default_parameters = ?,
                   error_message = ?, dependencies = ?, is_active = ?,
                   effective_from = ?, effective_until = ?, version = ?, updated_at = ?
             WHERE rule_id = ? AND version = ?
            """,
            (
                updated.name,
                updated.description,
                updated.category.value,
                updated.severity.value,
                _dumps(updated.auction_types),
                _dumps(updated.condition),
                _dumps(updated.default_parameters),
                updated.error_message,
                _dumps(updated.dependencies),
                int(updated.is_active),
                updated.effective_from,
                updated.effective_until,
                updated.version,
                updated.updated_at,
                rule.rule_id,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            current = self.get_rule(rule.rule_id)
            raise ConcurrencyConflict(
                "rule",
                rule.rule_id,
                expected_version=expected_version,
                actual_version=current.version if current else None,
            )
        return updated

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        row = self._one("SELECT * FROM rules WHERE rule_id = ?", (rule_id,))
        return _rule_from_row(row) if row else None

    def get_rule_by_code(self, rule_code: str) -> Optional[Rule]:
        row = self._one("SELECT * FROM rules WHERE rule_code = ?", (rule_code,))
        return _rule_from_row(row) if row else None

    def list_rules(self, active_only: bool = False) -> List[Rule]:
        sql = "SELECT * FROM rules"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = self._all(sql + " ORDER BY rule_code")
        return [_rule_from_row(r) for r in rows]

    # =========================================================================
    # Rule configurations
    # =========================================================================

    def insert_configuration(self, config: RuleConfiguration) -> RuleConfiguration:
        self._conn.execute(
            """
            INSERT INTO rule_configurations (
                config_id, rule_id, scope, auction_id, auction_type, scope_value,
                config_values, priority, is_active, requires_approval, approved_by,
                approved_at, effective_from, effective_until, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                config.config_id,
                config.rule_id,
                config.scope.value,
                config.auction_id,
                config.auction_type,
                config.scope_value,
                _dumps(config.config_values),
                config.priority,
                int(config.is_active),
                int(config.requires_approval),
                config.approved_by,
                config.approved_at,
                config.effective_from,
                config.effective_until,
                config.created_at,
            ),
        )
        return config

    def update_configuration(self, config: RuleConfiguration) -> RuleConfiguration:
        self._conn.execute(
            """
            UPDATE rule_configurations
               SET config_values = ?, priority = ?, is_active = ?, approved_by = ?,
                   approved_at = ?, effective_from = ?, effective_until = ?
             WHERE config_id = ?
            """,
            (
                _dumps(config.config_values),
                config.priority,
                int(config.is_active),
                config.approved_by,
                config.approved_at,
                config.effective_from,
                config.effective_until,
                config.config_id,
            ),
        )
        return config

    def get_configuration(self, config_id: str) -> Optional[RuleConfiguration]:
        row = self._one("SELECT * FROM rule_configurations WHERE config_id = ?", (config_id,))
        return _config_from_row(row) if row else None

    def list_configurations(self, rule_id: str) -> List[RuleConfiguration]:
        rows = self._all(
            "SELECT * FROM rule_configurations WHERE rule_id = ? ORDER BY created_at, config_id",
            (rule_id,),
        )
        return [_config_from_row(r) for r in rows]

    # =========================================================================
    # Violations
    # =========================================================================

    def insert_violation(self, violation: RuleViolation) -> RuleViolation:
        self._conn.execute(
            """
            INSERT INTO rule_violations (
                violation_id, rule_id, rule_version, config_id, auction_id, user_id,
                bid_id, violation_type, severity, message, expected_values,
                actual_values, status, resolution, resolved_by, resolved_at,
                escalation_level, next_escalation_at, occurred_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                violation.violation_id,
                violation.rule_id,
                violation.rule_version,
                violation.config_id,
                violation.auction_id,
                violation.user_id,
                violation.bid_id,
                violation.violation_type.value,
                violation.severity.value,
                violation.message,
                _dumps(violation.expected_values),
                _dumps(violation.actual_values),
                violation.status.value,
                violation.resolution,
                violation.resolved_by,
                violation.resolved_at,
                violation.escalation_level,
                violation.next_escalation_at,
                violation.occurred_at,
            ),
        )
        return violation

    def update_violation(self, violation: RuleViolation) -> RuleViolation:
        self._conn.execute(
            """
            UPDATE rule_violations
               SET status = ?, resolution = ?, resolved_by = ?, resolved_at = ?,
                   escalation_level = ?, next_escalation_at = ?
             WHERE violation_id = ?
            """,
            (
                violation.status.value,
                violation.resolution,
                violation.resolved_by,
                violation.resolved_at,
                violation.escalation_level,
                violation.next_escalation_at,
                violation.violation_id,
            ),
        )
        return violation

    def get_violation(self, violation_id: str) -> Optional[RuleViolation]:
        row = self._one("SELECT * FROM rule_violations WHERE violation_id = ?", (violation_id,))
        return _violation_from_row(row) if row else None

    def list_violations(
        self,
        auction_id: Optional[str] = None,
        status: Optional[ViolationStatus] = None,
    ) -> List[RuleViolation]:
        clauses, params = [], []
        if auction_id is not None:
            clauses.append("auction_id = ?")
            params.append(auction_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._all(
            f"SELECT * FROM rule_violations {where} ORDER BY occurred_at, violation_id",
            tuple(params),
        )
        return [_violation_from_row(r) for r in rows]

    def list_due_escalations(self, now: int) -> List[RuleViolation]:
        rows = self._all(
            """
            SELECT * FROM rule_violations
             WHERE status IN ('detected', 'acknowledged', 'escalated')
               AND next_escalation_at IS NOT NULL
               AND next_escalation_at <= ?
             ORDER BY next_escalation_at, violation_id
            """,
            (now,),
        )
        return [_violation_from_row(r) for r in rows]

    # =========================================================================
    # Outbox
    # =========================================================================

    def append_event(
        self,
        event_type: str,
        auction_id: str,
        payload: dict,
        created_at: Optional[int] = None,
    ) -> int:
        """Insert an outbox row; returns its event id."""
        cursor = self._conn.execute(
            "INSERT INTO outbox_events (event_type, auction_id, payload, created_at) VALUES (?, ?, ?, ?)",
            (
                getattr(event_type, "value", event_type),
                auction_id,
                _dumps(payload),
                created_at if created_at is not None else now_ms(),
            ),
        )
        return cursor.lastrowid

    def fetch_pending_events(self, limit: int, now: int) -> List[OutboxEvent]:
        """
        Undelivered events that are due, in creation (event id) order.

        An event waits while an earlier event of the same auction is still
        backing off, so each auction's events go out in order.
        """
        rows = self._all(
            """
            SELECT * FROM outbox_events e
             WHERE e.processed_at IS NULL
               AND e.dead_lettered_at IS NULL
               AND (e.next_attempt_at IS NULL OR e.next_attempt_at <= ?)
               AND NOT EXISTS (
                   SELECT 1 FROM outbox_events p
                    WHERE p.auction_id = e.auction_id
                      AND p.event_id < e.event_id
                      AND p.processed_at IS NULL
                      AND p.dead_lettered_at IS NULL
                      AND p.next_attempt_at > ?
               )
             ORDER BY e.event_id
             LIMIT ?
            """,
            (now, now, limit),
        )
        return [_event_from_row(r) for r in rows]

    def count_pending_events(self) -> int:
        row = self._one(
            "SELECT COUNT(*) AS cnt FROM outbox_events WHERE processed_at IS NULL AND dead_lettered_at IS NULL"
        )
        return row["cnt"]

    def get_event(self, event_id: int) -> Optional[OutboxEvent]:
        row = self._one("SELECT * FROM outbox_events WHERE event_id = ?", (event_id,))
        return _event_from_row(row) if row else None

    def list_events(self, auction_id: Optional[str] = None) -> List[OutboxEvent]:
        if auction_id is None:
            rows = self._all("SELECT * FROM outbox_events ORDER BY event_id")
        else:
            rows = self._all(
                "SELECT * FROM outbox_events WHERE auction_id = ? ORDER BY event_id",
                (auction_id,),
            )
        return [_event_from_row(r) for r in rows]

    def mark_event_processed(self, event_id: int, at: int) -> None:
        self._conn.execute(
            "UPDATE outbox_events SET processed_at = ?, last_error = NULL WHERE event_id = ? AND processed_at IS NULL",
            (at, event_id),
        )

    def record_event_failure(self, event_id: int, error: str, next_attempt_at: Optional[int]) -> int:
        """Count a failed attempt; returns the new attempt count."""
        self._conn.execute(
            """
            UPDATE outbox_events
               SET attempts = attempts + 1, last_error = ?, next_attempt_at = ?
             WHERE event_id = ?
            """,
            (error, next_attempt_at, event_id),
        )
        row = self._one("SELECT attempts FROM outbox_events WHERE event_id = ?", (event_id,))
        return row["attempts"] if row else 0

    def mark_event_dead_lettered(self, event_id: int, at: int) -> None:
        self._conn.execute(
            "UPDATE outbox_events SET dead_lettered_at = ?, next_attempt_at = NULL WHERE event_id = ?",
            (at, event_id),
        )

    def list_dead_letters(self) -> List[OutboxEvent]:
        rows = self._all("SELECT * FROM outbox_events WHERE dead_lettered_at IS NOT NULL ORDER BY event_id")
        return [_event_from_row(r) for r in rows]

    # =========================================================================
    # Settlements
    # =========================================================================

    def insert_settlement(self, record: SettlementRecord) -> SettlementRecord:
        self._conn.execute(
            """
            INSERT INTO settlements (
                auction_id, result_type, determination_method, winner_id,
                winning_bid_id, final_price, clearing_price, total_value,
                awards, charges, forced, settled_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.auction_id,
                record.result_type.value,
                record.determination_method,
                record.winner_id,
                record.winning_bid_id,
                record.final_price,
                record.clearing_price,
                record.total_value,
                _dumps(record.awards),
                _dumps(record.charges),
                int(record.forced),
                record.settled_at,
            ),
        )
        return record

    def get_settlement(self, auction_id: str) -> Optional[SettlementRecord]:
        row = self._one("SELECT * FROM settlements WHERE auction_id = ?", (auction_id,))
        return _settlement_from_row(row) if row else None

    # =========================================================================
    # Relay leases
    # =========================================================================

    def acquire_lease(self, partition: str, owner: str, ttl_ms: int, now: int) -> bool:
        """Take or renew a partition lease. False if another owner holds it."""
        self._conn.execute(
            """
            INSERT INTO relay_leases (partition_key, owner, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(partition_key) DO UPDATE
               SET owner = excluded.owner, expires_at = excluded.expires_at
             WHERE relay_leases.owner = excluded.owner OR relay_leases.expires_at <= ?
            """,
            (partition, owner, now + ttl_ms, now),
        )
        row = self._one("SELECT owner FROM relay_leases WHERE partition_key = ?", (partition,))
        return row is not None and row["owner"] == owner

    def release_lease(self, partition: str, owner: str) -> None:
        self._conn.execute(
            "DELETE FROM relay_leases WHERE partition_key = ? AND owner = ?",
            (partition, owner),
        )


# =============================================================================
# Store
# =============================================================================


class AuctionStore:
    """
    Transactional auction store over SQLite.

    A transaction opened while another is already open on the same thread
    joins the outer one; the outermost block commits or rolls back.
    """

    def __init__(self, adapter: SQLiteAdapter):
        self.adapter = adapter
        self._local = threading.local()

    @classmethod
    def open(cls, db_path: Path) -> "AuctionStore":
        store = cls(SQLiteAdapter(Path(db_path)))
        logger.info(f"AuctionStore opened at {db_path}")
        return store

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[StoreTransaction]:
        """
        Open a transaction.

        Args:
            write: take the write lock up front (BEGIN IMMEDIATE); read-only
                callers pass False for a deferred snapshot

        Raises:
            InfrastructureError: the database rejected the operation
        """
        active = getattr(self._local, "tx", None)
        if active is not None:
            yield active
            return

        conn = self.adapter.connection()
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        except sqlite3.Error as e:
            raise InfrastructureError(
                f"Store unavailable: {e}",
                context={"db_path": str(self.adapter.db_path)},
            ) from e

        tx = StoreTransaction(conn)
        self._local.tx = tx
        try:
            yield tx
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(conn)
            raise InfrastructureError(
                f"Store operation failed: {e}",
                context={"db_path": str(self.adapter.db_path)},
            ) from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            self._local.tx = None

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def close(self) -> None:
        self.adapter.close()
