"""Ordered, idempotent execution of provisioning steps."""

import time
from typing import Callable, List, Optional

from stackbillinstaller.errors import InstallerError
from stackbillinstaller.errors_catalog import actionable_error
from stackbillinstaller.models import ProvisioningStep, ServerContext, StepResult, StepStatus
from stackbillinstaller.services.readiness import ReadinessWaiter

StepListener = Callable[[ProvisioningStep, Optional[StepResult]], None]


class ProvisioningSequencer:
    """Runs steps strictly in order and classifies each outcome.

    A failing step never rolls back earlier ones. Failures of critical steps
    stop the pipeline; anything else is downgraded to a warning.
    """

    def __init__(
        self,
        waiter: ReadinessWaiter,
        logger,
        console,
        on_step_started: Optional[StepListener] = None,
        on_step_finished: Optional[StepListener] = None,
        clock: Callable[[], float] = time.monotonic,
        mask: Callable[[str], str] = str,
    ):
        self.waiter = waiter
        self.logger = logger
        self.console = console
        self.on_step_started = on_step_started
        self.on_step_finished = on_step_finished
        self.clock = clock
        self.mask = mask

    def run(self, steps: List[ProvisioningStep], context: ServerContext) -> List[StepResult]:
        results: List[StepResult] = []
        skipped_groups = set(context.skipped_groups)

        for step in steps:
            if self.on_step_started:
                self.on_step_started(step, None)

            result = self._run_step(step, context, skipped_groups)
            results.append(result)
            self._announce(step, result)

            if self.on_step_finished:
                self.on_step_finished(step, result)

            if result.status == StepStatus.FATAL_ERROR:
                self.logger.error("Aborting: critical step '%s' failed.", step.name)
                break

        return results

    def _run_step(self, step: ProvisioningStep, context: ServerContext, skipped_groups) -> StepResult:
        started = self.clock()

        if step.skippable and step.skip_group in skipped_groups:
            self.logger.info("Skipping %s (--skip-%s)", step.name, step.skip_group)
            return StepResult(step.name, StepStatus.SKIPPED, message=f"--skip-{step.skip_group}")

        self.console.print(f"[blue]==> {step.description or step.name}[/blue]")

        try:
            satisfied = bool(step.idempotency_check(context))
        except Exception as exc:
            return self._failure(step, "step_failed", f"idempotency check failed: {self._describe(exc)}", started)

        if not satisfied:
            try:
                step.apply(context)
            except Exception as exc:
                return self._failure(step, "step_failed", self._describe(exc), started)

        wait = self._wait_ready(step, context)
        if wait is not None:
            return self._failure(step, "step_timed_out", wait, started)

        status = StepStatus.ALREADY_SATISFIED if satisfied else StepStatus.APPLIED
        return StepResult(step.name, status, duration_seconds=self.clock() - started)

    def _wait_ready(self, step: ProvisioningStep, context: ServerContext) -> Optional[str]:
        if step.readiness_check is None:
            return None

        result = self.waiter.wait_until(
            lambda: step.readiness_check(context),
            timeout=step.timeout,
            poll_interval=step.poll_interval,
            description=step.name,
        )
        if result.ready:
            return None
        return result.reason or "not ready"

    def _describe(self, exc: Exception) -> str:
        if isinstance(exc, InstallerError):
            return self.mask(str(exc))
        self.logger.debug("Unexpected error in step", exc_info=True)
        return self.mask(f"{type(exc).__name__}: {exc}")

    def _failure(self, step: ProvisioningStep, code: str, detail: str, started: float) -> StepResult:
        message = actionable_error(code, step=step.name, detail=detail, remediation=step.remediation)
        status = StepStatus.FATAL_ERROR if step.critical else StepStatus.DEGRADED_WARNING
        if step.critical:
            self.logger.error(message)
        else:
            self.logger.warning(message)
        return StepResult(
            step.name,
            status,
            message=message,
            remediation=step.remediation,
            duration_seconds=self.clock() - started,
        )

    def _announce(self, step: ProvisioningStep, result: StepResult):
        if result.status == StepStatus.APPLIED:
            self.console.print(f"[green]{step.name}: done.[/green]")
        elif result.status == StepStatus.ALREADY_SATISFIED:
            self.console.print(f"[green]{step.name}: already in place.[/green]")
        elif result.status == StepStatus.DEGRADED_WARNING:
            self.console.print(f"[yellow]{step.name}: completed with warnings.[/yellow]")
        elif result.status == StepStatus.FATAL_ERROR:
            self.console.print(f"[bold red]{step.name}: failed.[/bold red]")
