"""
Rule scheduler - background loop driving evaluation cycles

A daemon thread wakes every tick (default 20s), works out which rules are due
per instance and runs one engine cycle per instance with due rules. Manual
triggers wake the loop immediately and force every rule of the instance due
(debounce still applies).

Per instance a lock serializes cycles: a scheduled tick skips an instance
whose cycle is still running, a manual trigger waits for it.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from qbt_automate.activity import ActivityRecorder
from qbt_automate.api import QBittorrentAPI
from qbt_automate.engine import DeletePreview, RulesEngine, RuleStats
from qbt_automate.errors import UnknownInstanceError
from qbt_automate.logging import get_logger
from qbt_automate.models import Rule
from qbt_automate.programs import ProgramRunner

logger = get_logger(__name__)


DEFAULT_TICK_INTERVAL = 20.0
DEFAULT_DEBOUNCE_WINDOW = 120.0
DEFAULT_RETENTION_DAYS = 7
SWEEP_INTERVAL = 600.0
PRUNE_INTERVAL = 3600.0


class RuleState:
    """Rule lifecycle constants"""
    WAITING = "waiting"
    DUE = "due"
    EVALUATING = "evaluating"
    APPLIED = "applied"
    NO_MATCH = "no_match"
    FAILED = "failed"


@dataclass
class InstanceStatus:
    """Last cycle of one instance, as reported by /api/status"""
    instance_id: str
    running: bool = False
    last_cycle_at: Optional[datetime] = None
    last_result: Optional[Dict[str, int]] = None
    last_error: Optional[str] = None
    rule_states: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'running': self.running,
            'last_cycle_at': self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            'last_result': self.last_result,
            'last_error': self.last_error,
            'rules': dict(self.rule_states),
        }


class RuleScheduler:
    """
    Schedules rule evaluation for every configured instance

    Args:
        config: Config instance
        recorder: Activity recorder shared with the HTTP server
        rules: Parsed rules (default: config.get_rules())
        dry_run: Record outcomes without changing anything
        program_runner: Runner for external_program actions
        api_factory: Builds an API client from an instance dict
        clock: Time source (seconds), replaceable in tests
    """

    def __init__(self, config, recorder: Optional[ActivityRecorder] = None,
                 rules: Optional[List[Rule]] = None, dry_run: bool = False,
                 program_runner: Optional[ProgramRunner] = None,
                 api_factory: Callable[[Dict], Any] = QBittorrentAPI.from_instance,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.recorder = recorder or ActivityRecorder()
        self.rules = rules if rules is not None else config.get_rules()
        self.dry_run = dry_run
        self.program_runner = program_runner
        self.api_factory = api_factory
        self.clock = clock

        self.tick_interval = float(config.get('engine.tick_interval', DEFAULT_TICK_INTERVAL))
        self.debounce_window = float(config.get('engine.debounce_window', DEFAULT_DEBOUNCE_WINDOW))
        self.retention_days = int(config.get('activity.retention_days', DEFAULT_RETENTION_DAYS))

        self.instances: Dict[str, Dict] = {
            instance_id: instance
            for instance_id, instance in config.get_instances().items()
            if instance.get('enabled', True)
        }
        self._apis: Dict[str, Any] = {}
        self._locks = {instance_id: threading.Lock() for instance_id in self.instances}
        self._status = {instance_id: InstanceStatus(instance_id) for instance_id in self.instances}

        # (instance, rule id) -> unix time of the last evaluation
        self._last_run: Dict[Tuple[str, str], float] = {}
        # instance -> (torrent hash, rule id) -> unix time of the last action
        self._debounce: Dict[str, Dict[Tuple[str, str], float]] = {i: {} for i in self.instances}
        self._state_lock = threading.Lock()

        self._pending: Set[str] = set()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self._last_sweep = 0.0
        self._last_prune = 0.0

        logger.info(
            f"Scheduler initialized: {len(self.instances)} instance(s), {len(self.rules)} rule(s), "
            f"tick {self.tick_interval:g}s, debounce {self.debounce_window:g}s"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the scheduler thread"""
        if self.thread and self.thread.is_alive():
            logger.warning("Scheduler already running")
            return

        self._stopping.clear()
        self.thread = threading.Thread(target=self._run_loop, daemon=True, name="scheduler")
        self.thread.start()
        logger.info("Scheduler thread started")

    def stop(self, timeout: float = 30.0):
        """
        Stop the scheduler thread

        Args:
            timeout: Maximum seconds to wait for an in-flight cycle
        """
        if not self.thread:
            return

        logger.info("Stopping scheduler...")
        self._stopping.set()
        self._wake.set()
        self.thread.join(timeout=timeout)

        if self.thread.is_alive():
            logger.warning(f"Scheduler did not stop within {timeout}s timeout")
        else:
            logger.info("Scheduler stopped")

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def _run_loop(self):
        logger.info("Scheduler loop started")
        self.prune()

        while not self._stopping.is_set():
            self._wake.clear()
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Unexpected error in scheduler loop: {e}", exc_info=True)

            self._wake.wait(self.tick_interval)

        logger.info("Scheduler loop exited")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _require_instance(self, instance_id: str):
        if instance_id not in self.instances:
            raise UnknownInstanceError(instance_id, sorted(self.instances))

    def trigger(self, instance_id: str):
        """
        Request an immediate cycle with every rule of an instance due

        Raises:
            UnknownInstanceError: If the instance is not configured
        """
        self._require_instance(instance_id)
        with self._state_lock:
            self._pending.add(instance_id)
        logger.info(f"[{instance_id}] Manual trigger queued")
        self._wake.set()

    def tick(self, now: Optional[float] = None):
        """One scheduler iteration: manual triggers first, then due rules"""
        now = self.clock() if now is None else now

        with self._state_lock:
            triggered = sorted(self._pending)
            self._pending.clear()

        for instance_id in triggered:
            self.run_cycle(instance_id, force=True, now=now, wait=True)

        for instance_id in self.instances:
            if instance_id in triggered:
                continue
            if self.due_rules(instance_id, now):
                self.run_cycle(instance_id, now=now, wait=False)

        if now - self._last_sweep >= SWEEP_INTERVAL:
            self.sweep(now)
        if now - self._last_prune >= PRUNE_INTERVAL:
            self.prune(now)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def instance_rules(self, instance_id: str) -> List[Rule]:
        rules = [r for r in self.rules if r.enabled and r.instance == instance_id]
        return sorted(rules, key=lambda r: (r.sort_order, r.id))

    def due_rules(self, instance_id: str, now: float, force: bool = False) -> List[Rule]:
        """Rules whose interval has elapsed (all of them when forced)"""
        due = []
        for rule in self.instance_rules(instance_id):
            last = self._last_run.get((instance_id, rule.id))
            if force or last is None or now - last >= rule.interval:
                due.append(rule)
        return due

    def debounced_pairs(self, instance_id: str, now: float) -> Set[Tuple[str, str]]:
        """(torrent hash, rule id) pairs acted on within the debounce window"""
        with self._state_lock:
            entries = self._debounce.get(instance_id, {})
            return {pair for pair, acted_at in entries.items() if now - acted_at < self.debounce_window}

    def _api(self, instance_id: str):
        if instance_id not in self._apis:
            self._apis[instance_id] = self.api_factory(self.instances[instance_id])
        return self._apis[instance_id]

    def run_cycle(self, instance_id: str, force: bool = False, now: Optional[float] = None,
                  wait: bool = True) -> Optional[RuleStats]:
        """
        Run one cycle for an instance

        Args:
            instance_id: Instance to evaluate
            force: Treat every rule as due (manual trigger, --once)
            now: Unix time (default: clock)
            wait: Block on an in-flight cycle instead of skipping the instance

        Returns:
            RuleStats, or None if skipped, nothing was due or the cycle failed

        Raises:
            UnknownInstanceError: If the instance is not configured
        """
        self._require_instance(instance_id)
        lock = self._locks[instance_id]
        if not lock.acquire(blocking=wait):
            logger.debug(f"[{instance_id}] Cycle still running, skipping tick")
            return None

        status = self._status[instance_id]
        try:
            now = self.clock() if now is None else now
            rules = self.due_rules(instance_id, now, force=force)
            if not rules:
                return None

            status.running = True
            for rule in rules:
                status.rule_states[rule.id] = RuleState.EVALUATING
                self._last_run[(instance_id, rule.id)] = now

            engine = RulesEngine(
                self._api(instance_id),
                self.config,
                dry_run=self.dry_run,
                instance_id=instance_id,
                recorder=self.recorder,
                program_runner=self.program_runner,
            )

            try:
                stats = engine.run(rules=rules, debounced=self.debounced_pairs(instance_id, now), now=now)
            except Exception as e:
                logger.error(f"[{instance_id}] Cycle failed: {e}")
                logger.debug(f"[{instance_id}] Cycle failure details", exc_info=True)
                status.last_error = str(e)
                status.last_cycle_at = datetime.now(timezone.utc)
                for rule in rules:
                    status.rule_states[rule.id] = RuleState.FAILED
                return None

            acted_rules = {rule_id for _, rule_id in stats.acted}
            for rule in rules:
                status.rule_states[rule.id] = RuleState.APPLIED if rule.id in acted_rules else RuleState.NO_MATCH

            if not self.dry_run and stats.acted:
                with self._state_lock:
                    entries = self._debounce.setdefault(instance_id, {})
                    for pair in stats.acted:
                        entries[pair] = now

            status.last_result = stats.to_dict()
            status.last_error = None
            status.last_cycle_at = datetime.now(timezone.utc)
            return stats
        finally:
            status.running = False
            lock.release()

    def run_all(self, force: bool = True, instance_id: Optional[str] = None) -> Dict[str, Optional[RuleStats]]:
        """Run one cycle per instance (or one instance) in the calling thread"""
        targets = [instance_id] if instance_id else list(self.instances)
        return {target: self.run_cycle(target, force=force) for target in targets}

    def preview_delete(self, instance_id: str, rule_id: str, limit: int = 25, offset: int = 0) -> DeletePreview:
        """
        Delete preview for one rule of an instance

        Raises:
            UnknownInstanceError: If the instance is not configured
            KeyError: If the instance has no rule with that id
            ValueError: If the rule is not a delete rule
        """
        self._require_instance(instance_id)
        rule = next((r for r in self.rules if r.id == rule_id and r.instance == instance_id), None)
        if rule is None:
            raise KeyError(f"No rule '{rule_id}' for instance '{instance_id}'")

        engine = RulesEngine(
            self._api(instance_id),
            self.config,
            dry_run=True,
            instance_id=instance_id,
            recorder=self.recorder,
        )
        return engine.preview_delete(rule, limit=limit, offset=offset, now=self.clock())

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop expired debounce entries"""
        now = self.clock() if now is None else now
        removed = 0
        with self._state_lock:
            for entries in self._debounce.values():
                expired = [pair for pair, acted_at in entries.items() if now - acted_at >= self.debounce_window]
                for pair in expired:
                    del entries[pair]
                removed += len(expired)
        self._last_sweep = now
        if removed:
            logger.debug(f"Debounce sweep removed {removed} entries")
        return removed

    def prune(self, now: Optional[float] = None) -> int:
        """Prune the activity store to the retention period"""
        self._last_prune = self.clock() if now is None else now
        return self.recorder.prune(self.retention_days)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def rule_state(self, instance_id: str, rule: Rule, now: Optional[float] = None) -> str:
        status = self._status[instance_id]
        state = status.rule_states.get(rule.id)
        if state == RuleState.EVALUATING:
            return state
        now = self.clock() if now is None else now
        last = self._last_run.get((instance_id, rule.id))
        if last is None or now - last >= rule.interval:
            return RuleState.DUE
        return state or RuleState.WAITING

    def get_status(self) -> Dict[str, Any]:
        """Scheduler and per-instance status"""
        return {
            'running': self.is_alive(),
            'dry_run': self.dry_run,
            'tick_interval': self.tick_interval,
            'instances': {
                instance_id: status.to_dict()
                for instance_id, status in self._status.items()
            },
        }

    def __repr__(self) -> str:
        return f"<RuleScheduler instances={len(self.instances)} alive={self.is_alive()}>"
