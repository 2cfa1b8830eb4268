"""
Automated order execution against the trading venue.

Cycle (``run_cycle``):
  SCAN      today's/tomorrow's DailyEdge rows with a posted line
  CLASSIFY  live line vs. p05/p95 with the configured tiers
  SIZE      budget share by strength, contracts at the limit price
  PRICE     limit price from the percentile position, clamped to the band
  DEDUPE    one active order per game
  SUBMIT | SKIP

``decide`` is pure; every decision, skipped or not, is written to
``venue_orders`` with its reason.  Gates run the same way in dry-run mode;
only the network call is replaced by a ``dry_run`` record.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from backend.core.edge_classifier import SIGNAL_OVER, classify
from backend.core.sizing import ExecutionConfig, contract_count, limit_price, position_size_cents
from backend.models import DailyEdge, DailyPnl, Game, TradingConfig, VenueOrder, dialect_insert
from backend.services.edges import local_today
from backend.services.trading_client import SigningError, TradingVenueClient, TradingVenueError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "filled")
SETTLEMENT_RESULTS = ("win", "loss", "void")


# ---------------------------------------------------------------------------
# Decision artifacts
# ---------------------------------------------------------------------------

@dataclass
class EdgeCandidate:
    """Everything ``decide`` needs about one game."""

    game_id: int
    sport_id: str
    date_local: date
    start_time_utc: datetime
    line: Optional[float]
    p05: Optional[float]
    p95: Optional[float]
    n_h2h: int
    is_visible: bool = True

    @classmethod
    def from_edge(cls, edge: DailyEdge, game: Game) -> "EdgeCandidate":
        return cls(
            game_id=game.id,
            sport_id=game.sport_id,
            date_local=edge.date_local,
            start_time_utc=game.start_time_utc,
            line=edge.line,
            p05=edge.p05,
            p95=edge.p95,
            n_h2h=edge.n_h2h or 0,
            is_visible=bool(edge.is_visible),
        )


@dataclass
class RiskState:
    now: datetime
    daily_pnl_cents: int = 0
    open_positions: int = 0
    active_game_ids: Set[int] = field(default_factory=set)


@dataclass(frozen=True)
class OrderIntent:
    game_id: int
    sport_id: str
    ticker: str
    side: str
    count: int
    price: int
    size_cents: int
    signal: str
    strength: str
    percentile_position: float
    hit_probability: float


@dataclass(frozen=True)
class Skip:
    game_id: int
    reason: str
    signal: Optional[str] = None
    strength: Optional[str] = None
    percentile_position: Optional[float] = None
    hit_probability: Optional[float] = None


@dataclass
class OrderResult:
    intent: OrderIntent
    status: str  # pending | filled | failed | dry_run
    venue_order_id: Optional[str] = None
    error: Optional[str] = None


def build_ticker(sport_id: str, day: date) -> str:
    return f"KX{sport_id.upper()}TOTAL-{day.strftime('%Y%m%d')}"


def decide(
    candidate: EdgeCandidate,
    config: ExecutionConfig,
    risk: RiskState,
) -> Union[OrderIntent, Skip]:
    """Apply the risk gates, classify, size and price one candidate."""
    gid = candidate.game_id

    if risk.daily_pnl_cents <= -config.max_daily_loss_cents:
        return Skip(gid, f"daily loss limit reached ({risk.daily_pnl_cents}c)")
    if risk.open_positions >= config.max_open_positions:
        return Skip(gid, f"max open positions reached ({risk.open_positions})")

    if candidate.start_time_utc <= risk.now:
        return Skip(gid, "game already started")
    if candidate.start_time_utc - risk.now > timedelta(hours=config.lead_window_hours):
        return Skip(gid, f"starts more than {config.lead_window_hours:g}h out")

    if candidate.n_h2h < config.min_edge_confidence:
        return Skip(gid, f"insufficient sample (n={candidate.n_h2h})")
    if candidate.line is None:
        return Skip(gid, "no line posted")

    result = classify(
        candidate.line, candidate.p05, candidate.p95,
        tiers=config.tiers, is_visible=candidate.is_visible,
    )
    details = {
        "signal": result.signal,
        "strength": result.strength,
        "percentile_position": result.percentile_position,
        "hit_probability": result.hit_probability,
    }
    if not result.has_edge:
        return Skip(gid, "no edge", **details)

    size = position_size_cents(result.strength, config)
    price = limit_price(result.percentile_position, config)
    count = contract_count(size, price)
    if count < 1:
        return Skip(gid, f"position too small ({size}c at {price}c)", **details)

    if gid in risk.active_game_ids:
        return Skip(gid, "active order already exists for game", **details)

    return OrderIntent(
        game_id=gid,
        sport_id=candidate.sport_id,
        ticker=build_ticker(candidate.sport_id, candidate.date_local),
        side="yes" if result.signal == SIGNAL_OVER else "no",
        count=count,
        price=price,
        size_cents=size,
        signal=result.signal,
        strength=result.strength,
        percentile_position=result.percentile_position,
        hit_probability=result.hit_probability,
    )


def submit(intent: OrderIntent, client: Optional[TradingVenueClient], dry_run: bool) -> OrderResult:
    """Send an intent to the venue; failures come back as ``failed`` results."""
    if dry_run:
        logger.info(
            "DRY RUN: %s %s x%d @ %dc (%s %s)",
            intent.ticker, intent.side, intent.count, intent.price, intent.signal, intent.strength,
        )
        return OrderResult(intent=intent, status="dry_run")

    try:
        response = client.create_order(
            intent.ticker, intent.side, intent.count, intent.price,
            client_order_id=str(uuid.uuid4()),
        )
    except (TradingVenueError, SigningError) as exc:
        logger.error("Order for game %d failed: %s", intent.game_id, exc)
        return OrderResult(intent=intent, status="failed", error=str(exc))

    order = response.get("order", response)
    status = "filled" if order.get("status") == "executed" else "pending"
    return OrderResult(intent=intent, status=status, venue_order_id=order.get("order_id"))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def load_execution_config(db: Session) -> ExecutionConfig:
    row = db.query(TradingConfig).filter(TradingConfig.name == "default").first()
    return ExecutionConfig.from_row(row)


def _active_orders(db: Session):
    return db.query(VenueOrder).filter(
        VenueOrder.status.in_(ACTIVE_STATUSES),
        VenueOrder.result.is_(None),
    )


def load_risk_state(db: Session, now: Optional[datetime] = None) -> RiskState:
    now = now or datetime.utcnow()
    pnl = db.query(DailyPnl.net_pnl_cents).filter(DailyPnl.date_local == local_today(now)).scalar()
    active = _active_orders(db).with_entities(VenueOrder.game_id).all()
    return RiskState(
        now=now,
        daily_pnl_cents=pnl or 0,
        open_positions=len(active),
        active_game_ids={gid for (gid,) in active},
    )


def _record(
    db: Session,
    candidate: EdgeCandidate,
    outcome: Union[Skip, OrderResult],
    job_run_id: Optional[int],
    is_demo: bool,
) -> VenueOrder:
    row = VenueOrder(
        job_run_id=job_run_id,
        game_id=candidate.game_id,
        sport_id=candidate.sport_id,
        line=candidate.line,
        p05=candidate.p05,
        p95=candidate.p95,
        n_h2h=candidate.n_h2h,
        is_demo=is_demo,
    )
    if isinstance(outcome, Skip):
        row.status = "skipped"
        row.reason = outcome.reason
        row.signal_type = outcome.signal
        row.edge_strength = outcome.strength
        row.percentile_position = outcome.percentile_position
        row.hit_probability = outcome.hit_probability
    else:
        intent = outcome.intent
        row.status = outcome.status
        row.reason = outcome.error
        row.venue_order_id = outcome.venue_order_id
        row.ticker = intent.ticker
        row.side = intent.side
        row.count = intent.count
        row.price = intent.price
        row.size_cents = intent.size_cents
        row.signal_type = intent.signal
        row.edge_strength = intent.strength
        row.percentile_position = intent.percentile_position
        row.hit_probability = intent.hit_probability
    db.add(row)
    return row


def _record_error(
    db: Session,
    candidate: EdgeCandidate,
    decision: Union[Skip, OrderIntent, None],
    exc: Exception,
    job_run_id: Optional[int],
    is_demo: bool,
) -> VenueOrder:
    """Audit row for a candidate whose decision or submission raised."""
    error = f"{type(exc).__name__}: {exc}"[:500]
    if isinstance(decision, OrderIntent):
        return _record(db, candidate, OrderResult(intent=decision, status="failed", error=error), job_run_id, is_demo)
    row = _record(db, candidate, Skip(candidate.game_id, error), job_run_id, is_demo)
    row.status = "failed"
    return row


def scan_candidates(db: Session, sports: Iterable[str], now: datetime) -> List[EdgeCandidate]:
    today = local_today(now)
    rows = (
        db.query(DailyEdge, Game)
        .join(Game, Game.id == DailyEdge.game_id)
        .filter(
            DailyEdge.date_local.in_([today, today + timedelta(days=1)]),
            DailyEdge.sport_id.in_(list(sports)),
            DailyEdge.line.isnot(None),
            Game.status != "final",
        )
        .order_by(Game.start_time_utc)
        .all()
    )
    return [EdgeCandidate.from_edge(edge, game) for edge, game in rows]


def run_cycle(
    db: Session,
    client: Optional[TradingVenueClient] = None,
    dry_run: bool = False,
    sports: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
    job_run_id: Optional[int] = None,
    progress=None,
) -> Dict:
    """
    One execution pass over the current slate.

    Raises:
        ValueError: live mode without venue credentials.
    """
    config = load_execution_config(db)
    now = now or datetime.utcnow()
    counters = {
        "candidates": 0,
        "intents": 0,
        "submitted": 0,
        "dry_run": 0,
        "skipped": 0,
        "failed": 0,
        "errors": 0,
    }

    if not dry_run and not config.enabled:
        logger.info("Auto-betting disabled in trading_config; nothing to do")
        return {**counters, "message": "disabled", "dry_run_mode": dry_run}

    if not dry_run and client is None:
        client = TradingVenueClient()
    is_demo = bool(getattr(client, "is_demo", False))

    risk = load_risk_state(db, now)
    candidates = scan_candidates(db, sports or config.enabled_sports, now)
    counters["candidates"] = len(candidates)
    skip_reasons: Dict[str, int] = {}

    for candidate in candidates:
        decision = None
        try:
            decision = decide(candidate, config, risk)
            if isinstance(decision, Skip):
                _record(db, candidate, decision, job_run_id, is_demo)
                counters["skipped"] += 1
                reason = decision.reason.split(" (")[0]
                skip_reasons[reason] = skip_reasons.get(reason, 0) + 1
                continue

            counters["intents"] += 1
            result = submit(decision, client, dry_run)
            _record(db, candidate, result, job_run_id, is_demo)
            if result.status == "failed":
                counters["failed"] += 1
                continue
            if result.status == "dry_run":
                counters["dry_run"] += 1
            else:
                counters["submitted"] += 1
                risk.open_positions += 1
            risk.active_game_ids.add(candidate.game_id)
        except Exception as exc:
            counters["errors"] += 1
            logger.error("Execution error for game %d: %s", candidate.game_id, exc, exc_info=True)
            db.rollback()
            _record_error(db, candidate, decision, exc, job_run_id, is_demo)
            if isinstance(decision, OrderIntent):
                # the venue may hold the order; no second attempt this cycle
                risk.active_game_ids.add(candidate.game_id)
        finally:
            db.commit()

    if progress:
        progress(f"{counters['candidates']} candidates, {counters['intents']} intents")

    summary = {**counters, "skip_reasons": skip_reasons, "dry_run_mode": dry_run, "is_demo": is_demo}
    logger.info("Execution cycle done: %s", summary)
    return summary


def settle_order(
    db: Session,
    order_id: int,
    result: str,
    pnl_cents: int,
    day: Optional[date] = None,
) -> VenueOrder:
    """
    Record an order's outcome and add its P&L to the day's total.

    Raises:
        ValueError: unknown order, order not active, or invalid result.
    """
    if result not in SETTLEMENT_RESULTS:
        raise ValueError(f"result must be one of {SETTLEMENT_RESULTS}, got {result!r}")
    order = db.get(VenueOrder, order_id)
    if order is None:
        raise ValueError(f"Order {order_id} not found")
    if order.status not in ACTIVE_STATUSES or order.result is not None:
        raise ValueError(f"Order {order_id} is not open (status={order.status}, result={order.result})")

    now = datetime.utcnow()
    order.result = result
    order.pnl_cents = int(pnl_cents)
    order.settled_at = now
    order.status = "filled"

    day = day or local_today(now)
    stmt = dialect_insert(db, DailyPnl).values(
        date_local=day, net_pnl_cents=int(pnl_cents), orders_settled=1, updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["date_local"],
        set_={
            "net_pnl_cents": DailyPnl.net_pnl_cents + stmt.excluded.net_pnl_cents,
            "orders_settled": DailyPnl.orders_settled + 1,
            "updated_at": now,
        },
    )
    db.execute(stmt)
    db.commit()
    logger.info("Settled order %d: %s %+dc", order_id, result, pnl_cents)
    return order


def daily_pnl(db: Session, days: int = 7) -> List[Dict]:
    cutoff = local_today() - timedelta(days=days)
    rows = (
        db.query(DailyPnl)
        .filter(DailyPnl.date_local >= cutoff)
        .order_by(DailyPnl.date_local.desc())
        .all()
    )
    return [
        {
            "date": r.date_local.isoformat(),
            "net_pnl_cents": r.net_pnl_cents,
            "orders_settled": r.orders_settled,
        }
        for r in rows
    ]


def order_counts(db: Session) -> Dict[str, int]:
    return dict(db.query(VenueOrder.status, func.count(VenueOrder.id)).group_by(VenueOrder.status).all())
