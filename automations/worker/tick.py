import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from automations import config
from automations.core.actions import UnknownAction, parse_action_config
from automations.core.models import (
    CONTINUING_STEP_STATES,
    INVALID_ACTION_CONFIG,
    MISSING_RUN_OR_NODE,
    NON_ACTION_NODE,
    NodeKind,
    StepState,
)
from automations.db import repository
from automations.worker.executor import ActionExecutor

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    step_ids: list[str] = field(default_factory=list)

    def record(self, step_id: str, status: str):
        self.processed += 1
        self.step_ids.append(step_id)
        if status == StepState.SUCCESS:
            self.succeeded += 1
        elif status == StepState.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class StepScheduler:
    """Claims queued Steps, executes them, and queues their successors.

    Each ``tick`` is one bounded unit of work: overlapping ticks from other
    workers are safe because a Step is only ever handled by the invocation
    whose lease claimed it.
    """

    def __init__(
        self,
        worker_id: str,
        executor: ActionExecutor,
        batch_size: int = config.STEP_BATCH_SIZE,
        lease_seconds: float = config.LEASE_SECONDS,
    ):
        self.worker_id = worker_id
        self.executor = executor
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds

    def tick(self, db: Session) -> TickReport:
        report = TickReport()
        lease = f"runner-{self.worker_id}-{uuid.uuid4().hex}"

        claimed = repository.claim_steps(db, self.batch_size, lease, self.lease_seconds)
        if not claimed:
            return report
        logger.info("Claimed %d steps (lease %s)", len(claimed), lease)

        steps = [(s.id, s.run_id, s.node_id) for s in claimed]
        runs = repository.get_runs(db, [run_id for _, run_id, _ in steps])
        nodes = repository.get_nodes(db, [node_id for _, _, node_id in steps])
        actions = {
            node.id: _load_action(node)
            for node in nodes.values()
            if node.kind == NodeKind.ACTION
        }
        kinds = {node.id: node.kind for node in nodes.values()}
        graph_of = {node.id: node.graph_id for node in nodes.values()}
        successors = repository.get_successor_map(db, list(nodes))

        finished_runs = set()
        for step_id, run_id, node_id in steps:
            run = runs.get(run_id)
            if run is None or node_id not in kinds or graph_of[node_id] != run.graph_id:
                status = self._finish(db, step_id, lease, StepState.FAILED, error=MISSING_RUN_OR_NODE)
            else:
                status = self._execute(
                    db, step_id, lease, run, kinds[node_id], actions.get(node_id),
                    successors.get(node_id, []),
                )
            if status is not None:
                report.record(step_id, status)
                finished_runs.add(run_id)

        for run_id in finished_runs:
            repository.finalize_run(db, run_id)
        db.commit()

        logger.info(
            "Tick %s: processed=%d succeeded=%d skipped=%d failed=%d",
            lease, report.processed, report.succeeded, report.skipped, report.failed,
        )
        return report

    def _execute(self, db, step_id, lease, run, kind, action, next_nodes) -> str | None:
        error = None
        try:
            if kind != NodeKind.ACTION:
                status, output = StepState.SKIPPED, {"reason": NON_ACTION_NODE}
            elif isinstance(action, UnknownAction):
                status, output, error = StepState.FAILED, {"reason": action.reason}, INVALID_ACTION_CONFIG
            else:
                output = self.executor.execute(db, step_id, run, action)
                status = StepState.SUCCESS

            return self._finish(
                db, step_id, lease, status, output, error,
                run_id=run.id,
                next_nodes=next_nodes if status in CONTINUING_STEP_STATES else [],
            )
        except Exception as e:
            db.rollback()
            logger.warning("Step %s failed: %s", step_id, e)
            return self._finish(db, step_id, lease, StepState.FAILED, error=str(e) or type(e).__name__)

    def _finish(self, db, step_id, lease, status, output=None, error=None, run_id=None, next_nodes=()):
        if not repository.finish_step(db, step_id, lease, status, output, error):
            db.rollback()
            logger.warning("Lease %s lost on step %s; result discarded", lease, step_id)
            return None
        if next_nodes:
            repository.enqueue_steps(db, run_id, list(next_nodes))
        db.commit()
        return status


def _load_action(node):
    try:
        raw = repository.loads(node.config)
    except ValueError as e:
        logger.warning("Action node %s has an unreadable config: %s", node.id, e)
        return UnknownAction(reason=f"config is not valid JSON: {e}")
    return parse_action_config(raw)
