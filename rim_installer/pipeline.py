from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

# (index, total, step_id), called before each step runs or is skipped
StepCallback = Callable[[int, int, str], None]


class Step(Protocol):
    """A single idempotent step."""

    step_id: str

    def is_done(self) -> bool:
        ...

    def run(self) -> None:
        ...


@dataclass(frozen=True)
class PipelineResult:
    ran_steps: List[str]
    skipped_steps: List[str]


def run_pipeline(
    *,
    steps: Sequence[Step],
    force: bool = False,
    on_step: Optional[StepCallback] = None,
) -> PipelineResult:
    """Run steps in order, skipping the ones already done.

    The first failing step stops the run and its exception propagates. Steps
    that already ran are not rolled back.
    """

    ran: List[str] = []
    skipped: List[str] = []
    total = len(steps)

    for idx, step in enumerate(steps):
        if on_step is not None:
            on_step(idx, total, step.step_id)

        if (not force) and step.is_done():
            logger.info("Skipping step %s (already done)", step.step_id)
            skipped.append(step.step_id)
            continue

        logger.info("Running step %s", step.step_id)
        step.run()
        ran.append(step.step_id)

    return PipelineResult(ran_steps=ran, skipped_steps=skipped)
