import asyncio
import logging
import time
import traceback
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from dcaladder.bots.models import BotConfig
from dcaladder.core.config import settings
from dcaladder.core.errors import ConfigurationError, InvalidTransition, NotFound
from dcaladder.exchange.gateway import ExchangeGateway, KrakenGateway, KrakenPriceFeed, PaperGateway
from dcaladder.exchange.kraken.client import KrakenClient
from dcaladder.execution.worker import ExecutionWorker
from dcaladder.ops.context import new_id, set_run_id
from dcaladder.ops.operator import Operator
from dcaladder.persistence.audit import Audit
from dcaladder.persistence.bot_store import BotStore
from dcaladder.persistence.credentials import Credential, CredentialStore
from dcaladder.persistence.db import DB, utc_now, utc_now_iso
from dcaladder.persistence.order_queue import OrderQueue
from dcaladder.runner.runner import BotRunner
from dcaladder.strategy.dca_engine import ladder_targets, order_amount_for, target_entry_price

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("dcaladder.main")

app = FastAPI(title="DCA Ladder")


# =========================
# Wiring
# =========================
@dataclass
class Services:
    db: DB
    audit: Audit
    bots: BotStore
    queue: OrderQueue
    credentials: CredentialStore
    price_feed: KrakenPriceFeed
    gateway_factory: Callable[[Credential], ExchangeGateway]
    runner: BotRunner
    worker: ExecutionWorker
    operator: Operator


_services: Optional[Services] = None


def _gateway_factory(price_feed: KrakenPriceFeed) -> Callable[[Credential], ExchangeGateway]:
    if settings.EXECUTION_MODE == "paper":
        paper = PaperGateway(price_feed)
        return lambda cred: paper

    cache: Dict[str, KrakenGateway] = {}

    def factory(cred: Credential) -> ExchangeGateway:
        gw = cache.get(cred.id)
        if gw is None or gw.client.api_key != cred.api_key:
            gw = KrakenGateway(
                KrakenClient(
                    api_key=cred.api_key,
                    api_secret=cred.api_secret,
                    base_url=settings.KRAKEN_BASE_URL,
                    timeout=settings.KRAKEN_TIMEOUT_SECONDS,
                )
            )
            cache[cred.id] = gw
        return gw

    return factory


def get_services() -> Services:
    global _services
    if _services is not None:
        return _services

    db = DB(settings.DB_PATH)
    audit = Audit(db, settings.AUDIT_JSONL_PATH)
    bots = BotStore(db)
    queue = OrderQueue(db, settings.queue_settings())
    credentials = CredentialStore(db)

    public_client = KrakenClient(base_url=settings.KRAKEN_BASE_URL, timeout=settings.KRAKEN_TIMEOUT_SECONDS)
    price_feed = KrakenPriceFeed(public_client)
    factory = _gateway_factory(price_feed)

    runner = BotRunner(
        bots,
        queue,
        price_feed,
        audit,
        exit_failed_policy=settings.EXIT_FAILED_POLICY,
        exit_failed_retry_minutes=settings.EXIT_FAILED_AUTO_RETRY_MINUTES,
    )
    worker = ExecutionWorker(
        db,
        queue,
        bots,
        credentials,
        factory,
        audit,
        dust_threshold=settings.DUST_VOLUME_THRESHOLD,
    )
    _services = Services(
        db=db,
        audit=audit,
        bots=bots,
        queue=queue,
        credentials=credentials,
        price_feed=price_feed,
        gateway_factory=factory,
        runner=runner,
        worker=worker,
        operator=Operator(bots, queue, audit),
    )
    return _services


# =========================
# Scheduler
# =========================
@dataclass
class SchedulerState:
    running: bool = False
    run_id: Optional[str] = None
    started_at: Optional[str] = None
    last_evaluate_at: Optional[str] = None
    last_queue_at: Optional[str] = None
    last_cleanup_at: Optional[str] = None
    evaluate_count: int = 0
    queue_count: int = 0
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = None


scheduler = SchedulerState()

_CLEANUP_INTERVAL_SECONDS = 24 * 3600


async def _run_entry_point(name: str, fn: Callable[[], object]) -> None:
    svc = get_services()
    try:
        await asyncio.to_thread(fn)
        scheduler.last_error = None
    except Exception:
        # a failing tick is recorded; the loop keeps going
        err = traceback.format_exc()
        scheduler.last_error = err
        log.error("scheduler %s failed:\n%s", name, err)
        svc.audit.event("ERROR", action=f"SCHEDULER_{name.upper()}_FAILED", details={"error": err})


async def scheduler_loop():
    """
    Fixed-interval scheduler for the two entry points:
      - evaluate_all_active_bots every EVALUATE_INTERVAL_SECONDS
      - process_order_queue every QUEUE_INTERVAL_SECONDS
    plus a daily cleanup of old finished orders.
    """
    svc = get_services()
    next_eval = next_queue = next_cleanup = time.monotonic()

    while scheduler.running:
        now = time.monotonic()

        if now >= next_eval:
            next_eval = now + settings.EVALUATE_INTERVAL_SECONDS
            scheduler.last_evaluate_at = utc_now_iso()
            await _run_entry_point("evaluate", svc.runner.evaluate_all_active_bots)
            scheduler.evaluate_count += 1

        if now >= next_queue:
            next_queue = now + settings.QUEUE_INTERVAL_SECONDS
            scheduler.last_queue_at = utc_now_iso()
            await _run_entry_point("process_queue", svc.worker.process_order_queue)
            scheduler.queue_count += 1

        if now >= next_cleanup:
            next_cleanup = now + _CLEANUP_INTERVAL_SECONDS
            scheduler.last_cleanup_at = utc_now_iso()
            await _run_entry_point(
                "cleanup",
                lambda: svc.queue.cleanup_old(utc_now(), settings.ORDER_RETENTION_DAYS),
            )

        await asyncio.sleep(max(0.5, min(next_eval, next_queue) - time.monotonic()))


def _start_scheduler() -> Dict:
    if scheduler.running and scheduler.task and not scheduler.task.done():
        return {"status": "already_running", **scheduler_status()}

    scheduler.run_id = new_id()
    set_run_id(scheduler.run_id)
    scheduler.running = True
    scheduler.started_at = utc_now_iso()
    scheduler.last_error = None
    scheduler.task = asyncio.create_task(scheduler_loop())

    get_services().audit.event(
        "RUN_START",
        details={
            "mode": settings.EXECUTION_MODE,
            "evaluate_interval_seconds": settings.EVALUATE_INTERVAL_SECONDS,
            "queue_interval_seconds": settings.QUEUE_INTERVAL_SECONDS,
        },
    )
    return {"status": "started", **scheduler_status()}


async def _stop_scheduler() -> Dict:
    if not scheduler.running:
        return {"status": "not_running", **scheduler_status()}

    scheduler.running = False
    if scheduler.task and not scheduler.task.done():
        scheduler.task.cancel()
        try:
            await scheduler.task
        except asyncio.CancelledError:
            # expected when we cancel the background loop
            pass
    scheduler.task = None

    get_services().audit.event("RUN_STOP", details={})
    return {"status": "stopped", **scheduler_status()}


def scheduler_status() -> Dict:
    return {
        "running": scheduler.running,
        "run_id": scheduler.run_id,
        "mode": settings.EXECUTION_MODE,
        "started_at": scheduler.started_at,
        "last_evaluate_at": scheduler.last_evaluate_at,
        "last_queue_at": scheduler.last_queue_at,
        "last_cleanup_at": scheduler.last_cleanup_at,
        "evaluate_count": scheduler.evaluate_count,
        "queue_count": scheduler.queue_count,
        "last_error": scheduler.last_error,
    }


# =========================
# Lifecycle
# =========================
@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        for w in settings.validate_runtime():
            log.warning("[CONFIG WARNING] %s", w)
    except ConfigurationError as e:
        # fail closed: refuse to run with a dangerous config
        log.critical(str(e))
        raise


@app.on_event("startup")
async def _startup_services():
    svc = get_services()
    if settings.EXECUTION_MODE == "live":
        if settings.KRAKEN_API_KEY and settings.KRAKEN_API_SECRET:
            svc.credentials.ensure_default(
                settings.DEFAULT_USER_ID, settings.KRAKEN_API_KEY, settings.KRAKEN_API_SECRET
            )
    else:
        svc.credentials.ensure_default(settings.DEFAULT_USER_ID, "paper", "paper", name="paper")

    if settings.SCHEDULER_ENABLED:
        _start_scheduler()


@app.on_event("shutdown")
async def _shutdown_scheduler():
    await _stop_scheduler()


# =========================
# Request models
# =========================
class CreateBotRequest(BaseModel):
    symbol: str
    initial_order_amount: float = Field(gt=0)
    trade_multiplier: float = Field(gt=0)
    max_entries: int = Field(ge=1)
    step_percent: float = Field(gt=0, lt=100)
    step_multiplier: float = Field(gt=0)
    take_profit_percent: float = Field(gt=0)
    exit_percentage: float = Field(100.0, gt=0, le=100)
    re_entry_delay_minutes: float = Field(0.0, ge=0)
    user_id: Optional[str] = None


def _bot_view(bot: BotConfig) -> Dict:
    d = asdict(bot)
    d["next_entry_amount"] = (
        order_amount_for(bot.current_entry_count, bot.initial_order_amount, bot.trade_multiplier)
        if bot.current_entry_count < bot.max_entries
        else None
    )
    d["next_entry_price"] = target_entry_price(bot)
    return d


def _call(fn: Callable, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))


# =========================
# Health / runner
# =========================
@app.get("/")
def root():
    svc = get_services()
    return {
        "status": "ok",
        "mode": settings.EXECUTION_MODE,
        "scheduler_running": scheduler.running,
        "bots": svc.bots.status_counts(),
        "orders": svc.queue.counts(),
    }


@app.get("/runner/status")
def runner_status_endpoint():
    return scheduler_status()


@app.post("/runner/start")
async def runner_start():
    return _start_scheduler()


@app.post("/runner/stop")
async def runner_stop():
    return await _stop_scheduler()


@app.post("/runner/evaluate")
def runner_evaluate():
    return get_services().runner.evaluate_all_active_bots()


@app.post("/runner/process-queue")
def runner_process_queue():
    return get_services().worker.process_order_queue().to_dict()


@app.get("/runner/audit/tail")
def audit_tail(limit: int = Query(50, ge=1, le=500)):
    """Tail the JSONL audit mirror without opening files."""
    return {"ok": True, "limit": limit, "events": get_services().audit.tail_jsonl(limit)}


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = Query(50, ge=1, le=500), event_type: Optional[str] = None):
    return {"ok": True, "events": get_services().audit.recent(limit, event_type=event_type)}


# =========================
# Bots
# =========================
@app.get("/bots")
def list_bots(user_id: Optional[str] = None):
    return [_bot_view(b) for b in get_services().bots.list_all(user_id)]


@app.post("/bots")
def create_bot(req: CreateBotRequest):
    data = req.model_dump()
    data["user_id"] = data.get("user_id") or settings.DEFAULT_USER_ID
    bot = _call(get_services().operator.create_bot, BotConfig(**data))
    return _bot_view(bot)


@app.get("/bots/{bot_id}")
def get_bot(bot_id: str):
    svc = get_services()
    bot = _call(svc.bots.require, bot_id)
    return {
        "bot": _bot_view(bot),
        "ladder_preview": ladder_targets(bot),
        "open_orders": [o.to_dict() for o in svc.queue.list_by_bot(bot_id) if o.is_outstanding],
    }


@app.get("/bots/{bot_id}/entries")
def get_bot_entries(bot_id: str, cycle_number: Optional[int] = None):
    svc = get_services()
    _call(svc.bots.require, bot_id)
    return [asdict(e) | {"id": e.id} for e in svc.bots.list_entries(bot_id, cycle_number)]


@app.get("/bots/{bot_id}/cycles")
def get_bot_cycles(bot_id: str):
    svc = get_services()
    _call(svc.bots.require, bot_id)
    return [asdict(c) for c in svc.bots.list_cycles(bot_id)]


@app.post("/bots/{bot_id}/pause")
def pause_bot(bot_id: str):
    return _bot_view(_call(get_services().operator.pause, bot_id))


@app.post("/bots/{bot_id}/resume")
def resume_bot(bot_id: str):
    return _bot_view(_call(get_services().operator.resume, bot_id))


@app.post("/bots/{bot_id}/retry-exit")
def retry_exit(bot_id: str):
    return _bot_view(_call(get_services().operator.retry_exit, bot_id))


@app.post("/bots/{bot_id}/restart")
def restart_bot(bot_id: str):
    return _bot_view(_call(get_services().operator.restart, bot_id))


@app.post("/bots/{bot_id}/force-exit")
def force_exit(bot_id: str):
    out = _call(get_services().operator.force_exit, bot_id)
    return {"bot": _bot_view(out["bot"]), "order": out["order"].to_dict()}


@app.delete("/bots/{bot_id}")
def delete_bot(bot_id: str):
    return {"ok": True, "removed": _call(get_services().operator.delete_bot, bot_id)}


# =========================
# Order queue
# =========================
@app.get("/orders")
def list_orders(status: Optional[str] = None, limit: int = Query(100, ge=1, le=1000)):
    return [o.to_dict() for o in get_services().queue.list_recent(limit, status)]


@app.get("/orders/stats")
def order_stats():
    counts = get_services().queue.counts()
    return {"counts": counts, "outstanding": counts["pending"] + counts["processing"] + counts["retry"]}


@app.get("/orders/{order_id}")
def get_order(order_id: str):
    order = get_services().queue.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"order not found: {order_id}")
    return order.to_dict()


@app.post("/orders/{order_id}/clear-failed-credentials")
def clear_order_failed_credentials(order_id: str):
    return {"ok": _call(get_services().operator.clear_failed_credentials, order_id)}


@app.post("/orders/clear-failed-credentials")
def clear_all_failed_credentials():
    return {"ok": True, "orders": get_services().operator.clear_all_failed_credentials()}


# =========================
# Exchange
# =========================
@app.get("/exchange/price")
def exchange_price(symbol: str = "BTC/USD"):
    return {"symbol": symbol, "price": get_services().price_feed.get_current_price(symbol)}


@app.get("/exchange/balance")
def exchange_balance(user_id: Optional[str] = None):
    svc = get_services()
    creds = svc.credentials.available_for(user_id or settings.DEFAULT_USER_ID)
    if not creds:
        raise HTTPException(status_code=404, detail="no active credentials")
    return {"credential": creds[0].public(), "balance": svc.gateway_factory(creds[0]).get_balance()}
