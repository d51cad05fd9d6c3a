"""
Plan executor.

Runs the plan layer by layer on a bounded thread pool. Every action commits
its own state entry as soon as it finishes; the first failed layer stops the
run, and whatever was not started is reported as not attempted.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console

from stackplan.errors import (
    ProviderActionError,
    ReferenceResolutionError,
    ResourceNotFoundError,
    StateCommitError,
    StateCorruptionError,
)
from stackplan.models.plan import Action, ActionOutcome, ActionType, ApplyResult, OutcomeStatus, Plan
from stackplan.models.resource import Reference, substitute
from stackplan.models.state import ResourceState, Snapshot
from stackplan.providers.base import Provider
from stackplan.store import StateStore

console = Console(stderr=True)

DEFAULT_CONCURRENCY = 4

_STATUS_MARK = {
    OutcomeStatus.SUCCEEDED: "[green]✓[/green]",
    OutcomeStatus.FAILED: "[red]✗[/red]",
    OutcomeStatus.NOT_ATTEMPTED: "[dim]-[/dim]",
}


class Executor:
    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        concurrency: int = DEFAULT_CONCURRENCY,
        snapshot: Optional[Snapshot] = None,
    ):
        self.provider = provider
        self.store = store
        self.concurrency = max(1, int(concurrency))
        self._state: Snapshot = dict(snapshot) if snapshot is not None else store.load()
        self._mutex = threading.Lock()
        self._cancel = threading.Event()
        self._outcomes: Dict[str, ActionOutcome] = {}

    def cancel(self) -> None:
        """Stop scheduling new actions; in-flight ones are allowed to finish."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, plan: Plan) -> ApplyResult:
        self._outcomes = {}
        try:
            for layer in plan.layers():
                if self.cancelled:
                    break
                failed = [o for o in self._run_layer(layer) if o.status == OutcomeStatus.FAILED]
                if failed:
                    console.print(
                        f"[red]{len(failed)} action(s) failed;[/red] no further layers will be started."
                    )
                    break
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted:[/yellow] no further actions will be started.")
            self.cancel()

        result = ApplyResult()
        for layer in plan.layers():
            for action in layer:
                result.outcomes.append(
                    self._outcomes.get(action.key) or ActionOutcome(action, OutcomeStatus.NOT_ATTEMPTED)
                )
        # a cancel that arrives after the last action ran changes nothing
        result.cancelled = self.cancelled and bool(result.not_attempted)
        return result

    # ------------------------------------------------------------------ scheduling

    def _run_layer(self, actions: List[Action]) -> List[ActionOutcome]:
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            pending = {pool.submit(self._run_action, a) for a in actions}
            while pending:
                try:
                    for future in as_completed(pending):
                        pending.discard(future)
                        future.result()
                except KeyboardInterrupt:
                    console.print(
                        "[yellow]Interrupted:[/yellow] waiting for in-flight actions to finish…"
                    )
                    self.cancel()
        return [self._outcomes[a.key] for a in actions if a.key in self._outcomes]

    def _run_action(self, action: Action) -> ActionOutcome:
        if self.cancelled:
            return self._record(ActionOutcome(action, OutcomeStatus.NOT_ATTEMPTED))

        started = time.monotonic()
        try:
            outputs = self._execute(action)
        except Exception as exc:
            outcome = ActionOutcome(
                action, OutcomeStatus.FAILED, error=str(exc), duration=time.monotonic() - started
            )
        else:
            outcome = ActionOutcome(
                action, OutcomeStatus.SUCCEEDED, outputs=outputs, duration=time.monotonic() - started
            )

        line = f"{_STATUS_MARK[outcome.status]} {action.label} {action.key} [dim]({outcome.duration:.1f}s)[/dim]"
        if outcome.error:
            line += f": {outcome.error}"
        console.print(line)
        return self._record(outcome)

    def _record(self, outcome: ActionOutcome) -> ActionOutcome:
        with self._mutex:
            self._outcomes[outcome.action.key] = outcome
        return outcome

    # ------------------------------------------------------------------ actions

    def _execute(self, action: Action) -> Dict[str, Any]:
        if action.action_type == ActionType.CREATE:
            return self._create(action)
        if action.action_type == ActionType.UPDATE:
            return self._update(action)
        if action.deposed_id:
            self._destroy_deposed(action)
        else:
            self._destroy(action)
        return {}

    def _create(self, action: Action) -> Dict[str, Any]:
        resolved = self._resolve(action)
        outputs = self._call(action, self.provider.create, action.kind, resolved)
        if not outputs or "id" not in outputs:
            raise ProviderActionError(action.key, ValueError("provider returned no 'id' output"))

        prior = self._current(action.resource_id)
        deposed = list(prior.deposed) if prior else []
        if action.replacement and prior is not None:
            deposed.append(prior.provider_id)
        provider_id = str(outputs["id"])
        try:
            self._commit(self._new_state(action, provider_id, resolved, outputs, deposed))
        except Exception as exc:
            raise StateCommitError(action.resource_id, provider_id, exc) from exc
        return outputs

    def _update(self, action: Action) -> Dict[str, Any]:
        prior = self._require(action)
        self._verify(action, prior.provider_id)
        resolved = self._resolve(action)
        outputs = self._call(action, self.provider.update, prior.provider_id, resolved) or {}
        outputs = {"id": prior.provider_id, **outputs}
        self._commit(self._new_state(action, prior.provider_id, resolved, outputs, prior.deposed))
        return outputs

    def _destroy(self, action: Action) -> None:
        prior = self._require(action)
        self._verify(action, prior.provider_id)
        self._call(action, self.provider.destroy, prior.provider_id)
        self.store.remove(action.resource_id)
        with self._mutex:
            self._state.pop(action.resource_id, None)

    def _destroy_deposed(self, action: Action) -> None:
        self._verify(action, action.deposed_id)
        self._call(action, self.provider.destroy, action.deposed_id)
        # sibling deposed instances of one resource finish concurrently; each
        # must drop its id from the latest entry, not from the one it started with
        with self._mutex:
            current = self._state.get(action.resource_id)
            if current is None or action.deposed_id not in current.deposed:
                return
            updated = replace(current, deposed=[d for d in current.deposed if d != action.deposed_id])
            self.store.commit(updated.resource_id, updated)
            self._state[updated.resource_id] = updated

    # ------------------------------------------------------------------ helpers

    def _call(self, action: Action, fn: Callable, *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as exc:
            raise ProviderActionError(action.key, exc) from exc

    def _verify(self, action: Action, provider_id: str) -> None:
        try:
            self.provider.describe(provider_id)
        except ResourceNotFoundError:
            raise StateCorruptionError(
                action.resource_id, f"provider no longer knows '{provider_id}'", provider_id
            )
        except Exception as exc:
            raise ProviderActionError(action.key, exc) from exc

    def _current(self, resource_id: str) -> Optional[ResourceState]:
        with self._mutex:
            return self._state.get(resource_id)

    def _require(self, action: Action) -> ResourceState:
        state = self._current(action.resource_id)
        if state is None:
            raise StateCorruptionError(action.resource_id, "no state recorded for this resource")
        return state

    def _commit(self, state: ResourceState) -> None:
        self.store.commit(state.resource_id, state)
        with self._mutex:
            self._state[state.resource_id] = state

    def _resolve(self, action: Action) -> Dict[str, Any]:
        def lookup(ref: Reference) -> Any:
            producer = self._current(ref.resource_id)
            if producer is None:
                raise ReferenceResolutionError(ref.expression, f"'{ref.resource_id}' has not been applied")
            if ref.attribute is None:
                return producer.provider_id
            if not producer.has_value(ref.attribute):
                raise ReferenceResolutionError(
                    ref.expression, f"'{ref.resource_id}' exposes no attribute '{ref.attribute}'"
                )
            return producer.value(ref.attribute)

        return {k: substitute(v, lookup) for k, v in action.attributes.items()}

    def _new_state(
        self,
        action: Action,
        provider_id: str,
        resolved: Dict[str, Any],
        outputs: Dict[str, Any],
        deposed: List[str],
    ) -> ResourceState:
        return ResourceState(
            resource_id=action.resource_id,
            resource_type=action.resource_type,
            kind=action.kind.value,
            provider_id=provider_id,
            attributes=dict(action.attributes),
            resolved=resolved,
            outputs=dict(outputs),
            dependencies=list(action.dependencies),
            deposed=list(deposed),
        )
