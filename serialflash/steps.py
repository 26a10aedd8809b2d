from typing import Any, Dict, List, Optional, Sequence

from serialflash.models import Phase, PhaseStatus, ProgressEvent

Steps = Dict[str, PhaseStatus]


def _name(phase: Any) -> str:
    return phase.value if isinstance(phase, Phase) else str(phase)


def initial_steps(plan: Sequence[Phase]) -> Steps:
    """All phases pending, in plan order."""
    return {_name(phase): PhaseStatus.PENDING for phase in plan}


def apply_event(plan: Sequence[Phase], steps: Steps, event: ProgressEvent) -> Steps:
    """Folds one progress event into the per-phase statuses.

    The event's phase becomes active and every phase ahead of it in the plan
    becomes completed; later phases are left alone. Replaying an event is a
    no-op, and events for phases outside the plan leave the statuses unchanged.
    """
    names: List[str] = [_name(phase) for phase in plan]
    current: str = _name(event.phase)
    updated: Steps = dict(steps)
    if current not in names:
        return updated
    position: int = names.index(current)
    for index, name in enumerate(names):
        if index < position:
            updated[name] = PhaseStatus.COMPLETED
        elif index == position:
            updated[name] = PhaseStatus.ACTIVE
    return updated


def apply_failure(steps: Steps) -> Steps:
    """Marks the active phase as failed; everything else keeps its status."""
    return {
        name: PhaseStatus.ERROR if status == PhaseStatus.ACTIVE else status
        for name, status in steps.items()
    }


def apply_success(steps: Steps) -> Steps:
    return {name: PhaseStatus.COMPLETED for name in steps}


class StepTracker:
    """Step badges for one run, rebuilt from scratch each time a run starts."""

    def __init__(self, plan: Sequence[Phase]) -> None:
        self.plan: List[Phase] = list(plan)
        self.steps: Steps = initial_steps(self.plan)

    def reset(self, plan: Optional[Sequence[Phase]] = None) -> None:
        if plan is not None:
            self.plan = list(plan)
        self.steps = initial_steps(self.plan)

    def on_event(self, event: ProgressEvent) -> Steps:
        self.steps = apply_event(self.plan, self.steps, event)
        return self.steps

    def on_failure(self) -> Steps:
        self.steps = apply_failure(self.steps)
        return self.steps

    def on_success(self) -> Steps:
        self.steps = apply_success(self.steps)
        return self.steps

    def status_of(self, phase: Phase) -> Optional[PhaseStatus]:
        return self.steps.get(_name(phase))

    def as_list(self) -> List[Dict[str, str]]:
        return [{"name": name, "status": status.value} for name, status in self.steps.items()]


class FlashLog:
    """Cumulative log lines and latest percent, folded from the same event stream."""

    def __init__(self) -> None:
        self.lines: List[str] = []
        self.percent: float = 0.0
        self.bytes_written: int = 0
        self.total_bytes: int = 0

    def reset(self) -> None:
        self.lines = []
        self.percent = 0.0
        self.bytes_written = 0
        self.total_bytes = 0

    def on_event(self, event: ProgressEvent) -> None:
        self.lines.append(event.message)
        self.percent = event.percent
        self.bytes_written = event.bytes_written
        self.total_bytes = event.total_bytes

    def add(self, line: str) -> None:
        self.lines.append(line)
