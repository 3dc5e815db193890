"""Job phase transition rules."""

from scribeflow.errors import ApiError
from scribeflow.schemas.job import JobPhase

TERMINAL_PHASES: frozenset[JobPhase] = frozenset(
    {
        JobPhase.COMPLETED,
        JobPhase.FAILED_PERMANENTLY,
        JobPhase.CANCELLED,
    }
)

RUNNING_PHASES: frozenset[JobPhase] = frozenset(
    {
        JobPhase.SILENCE_DETECTION,
        JobPhase.AUDIO_EXTRACTION,
        JobPhase.UPLOADING,
        JobPhase.SUBMITTED,
        JobPhase.PROCESSING,
        JobPhase.DOWNLOADING,
    }
)

_SIDE_EXITS = {JobPhase.FAILED, JobPhase.FAILED_PERMANENTLY, JobPhase.CANCELLED}

_ALLOWED_TRANSITIONS: dict[JobPhase, set[JobPhase]] = {
    # QUEUED -> COMPLETED is the dedup short-circuit; no remote cost is incurred.
    JobPhase.QUEUED: {JobPhase.SILENCE_DETECTION, JobPhase.COMPLETED} | _SIDE_EXITS,
    JobPhase.SILENCE_DETECTION: {JobPhase.SILENCE_DETECTION, JobPhase.AUDIO_EXTRACTION} | _SIDE_EXITS,
    JobPhase.AUDIO_EXTRACTION: {JobPhase.AUDIO_EXTRACTION, JobPhase.UPLOADING} | _SIDE_EXITS,
    JobPhase.UPLOADING: {JobPhase.UPLOADING, JobPhase.SUBMITTED} | _SIDE_EXITS,
    JobPhase.SUBMITTED: {JobPhase.PROCESSING} | _SIDE_EXITS,
    JobPhase.PROCESSING: {JobPhase.PROCESSING, JobPhase.DOWNLOADING} | _SIDE_EXITS,
    JobPhase.DOWNLOADING: {JobPhase.DOWNLOADING, JobPhase.COMPLETED} | _SIDE_EXITS,
    JobPhase.FAILED: {JobPhase.QUEUED, JobPhase.FAILED_PERMANENTLY, JobPhase.CANCELLED},
    JobPhase.COMPLETED: set(),
    JobPhase.FAILED_PERMANENTLY: set(),
    JobPhase.CANCELLED: set(),
}


def allowed_next_phases(phase: JobPhase) -> list[JobPhase]:
    """Return deterministically ordered allowed successors for a phase."""
    return sorted(_ALLOWED_TRANSITIONS.get(phase, set()), key=lambda p: p.value)


def is_terminal(phase: JobPhase) -> bool:
    return phase in TERMINAL_PHASES


def ensure_transition(
    old_phase: JobPhase,
    new_phase: JobPhase,
    *,
    attempt_count: int = 0,
    max_attempts: int | None = None,
) -> None:
    """Validate a transition according to lifecycle rules.

    The FAILED -> QUEUED retry edge additionally requires ``attempt_count < max_attempts``.
    """
    if old_phase in TERMINAL_PHASES:
        raise ApiError(
            status_code=409,
            code="FSM_TERMINAL_IMMUTABLE",
            message="Terminal phase cannot be mutated",
            details={
                "current_phase": old_phase,
                "attempted_phase": new_phase,
                "allowed_next_phases": [],
            },
        )

    allowed_next = allowed_next_phases(old_phase)
    if new_phase not in _ALLOWED_TRANSITIONS.get(old_phase, set()):
        raise ApiError(
            status_code=409,
            code="FSM_TRANSITION_INVALID",
            message="Invalid phase transition",
            details={
                "current_phase": old_phase,
                "attempted_phase": new_phase,
                "allowed_next_phases": allowed_next,
            },
        )

    if old_phase is JobPhase.FAILED and new_phase is JobPhase.QUEUED:
        if max_attempts is not None and attempt_count >= max_attempts:
            raise ApiError(
                status_code=409,
                code="FSM_RETRY_LIMIT_REACHED",
                message="Retry limit reached; job must fail permanently",
                details={
                    "current_phase": old_phase,
                    "attempted_phase": new_phase,
                    "allowed_next_phases": [JobPhase.CANCELLED, JobPhase.FAILED_PERMANENTLY],
                    "attempt_count": attempt_count,
                    "max_attempts": max_attempts,
                },
            )
