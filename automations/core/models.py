from enum import Enum


class GraphStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"


class RunState(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StepState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class MessageState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class EventState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


TERMINAL_STEP_STATES = frozenset(
    {StepState.SUCCESS, StepState.SKIPPED, StepState.FAILED}
)

# Steps in these states have their outgoing edges followed.
CONTINUING_STEP_STATES = frozenset({StepState.SUCCESS, StepState.SKIPPED})

LEAD_STAGE_CHANGED = "lead.stage_changed"

# Reasons recorded on Steps that did not run an action.
MISSING_RUN_OR_NODE = "missing_run_or_node"
NON_ACTION_NODE = "non_action_node"
INVALID_ACTION_CONFIG = "invalid_action_config"
