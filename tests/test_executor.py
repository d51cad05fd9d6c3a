"""
Executor tests: reference propagation, failure isolation, resumability.
"""
import threading
import time
from dataclasses import replace

from conftest import FakeProvider, make_resource, stack_resources
from stackplan import executor as executor_module
from stackplan import planner
from stackplan.executor import Executor
from stackplan.graph import builder
from stackplan.models.plan import OutcomeStatus
from stackplan.store import MemoryStateStore


def _plan(resources, store):
    return planner.generate(builder.build(resources), store.load())


def _run(resources, provider, store, concurrency=4):
    executor = Executor(provider, store, concurrency=concurrency)
    return executor.apply(_plan(resources, store))


def _statuses(result):
    return [(o.action.key, o.status) for o in result.outcomes]


class TestApply:
    def test_all_succeed(self, provider, store):
        result = _run(stack_resources(), provider, store)
        assert result.ok
        assert len(result.succeeded) == 5
        assert set(store.load()) == {r.resource_id for r in stack_resources()}
        assert len(provider.objects) == 5

    def test_references_resolved_from_producer_outputs(self, provider, store):
        _run(stack_resources(), provider, store)
        state = store.load()
        vpc_id = state["aws_vpc.n"].provider_id
        assert state["aws_security_group.s"].resolved["vpc_id"] == vpc_id
        svc = state["aws_ecs_service.c"]
        assert svc.resolved["security_groups"] == [state["aws_security_group.s"].provider_id]
        assert svc.resolved["image"] == "registry.local/r:latest"
        assert svc.resolved["task_role_arn"] == state["aws_iam_role.g"].outputs["arn"]
        assert provider.objects[svc.provider_id]["task_role_arn"].startswith("arn:fake:")

    def test_declared_form_kept_in_state(self, provider, store):
        _run(stack_resources(), provider, store)
        assert store.load()["aws_security_group.s"].attributes["vpc_id"] == "${aws_vpc.n.id}"

    def test_producer_created_before_consumer(self, provider, store):
        _run(stack_resources(), provider, store)
        created = provider.ops("create")
        assert created.index("n") < created.index("s") < created.index("c")
        assert created.index("r") < created.index("c")
        assert created.index("g") < created.index("c")

    def test_concurrency_bounded(self, store):
        provider = FakeProvider(delay=0.05)
        resources = [make_resource("aws_iam_role", f"r{i}", name=f"r{i}") for i in range(6)]
        result = _run(resources, provider, store, concurrency=2)
        assert result.ok
        assert provider.max_active <= 2

    def test_dependencies_recorded(self, provider, store):
        _run(stack_resources(), provider, store)
        assert store.load()["aws_ecs_service.c"].dependencies == [
            "aws_security_group.s",
            "aws_ecr_repository.r",
            "aws_iam_role.g",
        ]

    def test_missing_id_output_fails(self, store):
        class NoIdProvider(FakeProvider):
            def create(self, kind, attributes):
                super().create(kind, attributes)
                return {}

        result = _run([make_resource("aws_iam_role", "g", name="g")], NoIdProvider(), store)
        assert not result.ok
        assert "no 'id' output" in result.failed[0].error
        assert store.load() == {}


class TestFailure:
    def test_failure_stops_later_layers(self, store):
        provider = FakeProvider(fail_on={"g"})
        result = _run(stack_resources(), provider, store)
        assert not result.ok
        assert _statuses(result) == [
            ("aws_vpc.n", OutcomeStatus.SUCCEEDED),
            ("aws_ecr_repository.r", OutcomeStatus.SUCCEEDED),
            ("aws_iam_role.g", OutcomeStatus.FAILED),
            ("aws_security_group.s", OutcomeStatus.NOT_ATTEMPTED),
            ("aws_ecs_service.c", OutcomeStatus.NOT_ATTEMPTED),
        ]
        assert "injected failure" in result.failed[0].error
        assert set(store.load()) == {"aws_vpc.n", "aws_ecr_repository.r"}

    def test_replan_after_failure_covers_the_rest(self, store):
        provider = FakeProvider(fail_on={"g"})
        _run(stack_resources(), provider, store)

        plan = _plan(stack_resources(), store)
        assert [a.resource_id for a in plan] == [
            "aws_iam_role.g",
            "aws_security_group.s",
            "aws_ecs_service.c",
        ]

        provider.fail_on.clear()
        result = Executor(provider, store).apply(plan)
        assert result.ok
        assert _plan(stack_resources(), store).is_empty
        assert len(provider.objects) == 5

    def test_state_corruption_when_provider_lost_resource(self, provider, store):
        _run(stack_resources(), provider, store)
        vpc_id = store.load()["aws_vpc.n"].provider_id
        del provider.objects[vpc_id]

        resources = [
            make_resource(r.resource_type, r.name, **{**r.attributes, "tags": {"a": "b"}})
            if r.resource_id == "aws_vpc.n" else r
            for r in stack_resources()
        ]
        result = _run(resources, provider, store)
        (failed,) = result.failed
        assert failed.action.resource_id == "aws_vpc.n"
        assert "not trustworthy" in failed.error
        assert provider.ops("update") == []

    def test_unrecorded_create_names_the_new_object(self, provider):
        class ReadOnlyStore(MemoryStateStore):
            def commit(self, resource_id, state):
                raise OSError("disk full")

        result = _run([make_resource("aws_iam_role", "g", name="g")], provider, ReadOnlyStore())
        (failed,) = result.failed
        (orphan,) = provider.objects
        assert f"created '{orphan}' but could not record it" in failed.error
        assert "disk full" in failed.error


class TestCancel:
    def test_cancel_before_start(self, provider, store):
        executor = Executor(provider, store)
        executor.cancel()
        result = executor.apply(_plan(stack_resources(), store))
        assert result.cancelled
        assert not result.ok
        assert len(result.not_attempted) == 5
        assert provider.calls == []

    def test_cancel_lets_in_flight_action_finish(self, store):
        class CancellingProvider(FakeProvider):
            executor = None

            def create(self, kind, attributes):
                self.executor.cancel()
                return super().create(kind, attributes)

        provider = CancellingProvider()
        executor = Executor(provider, store, concurrency=1)
        provider.executor = executor
        result = executor.apply(_plan(stack_resources(), store))

        assert result.cancelled
        assert [o.status for o in result.outcomes] == [
            OutcomeStatus.SUCCEEDED,
            OutcomeStatus.NOT_ATTEMPTED,
            OutcomeStatus.NOT_ATTEMPTED,
            OutcomeStatus.NOT_ATTEMPTED,
            OutcomeStatus.NOT_ATTEMPTED,
        ]
        assert set(store.load()) == {"aws_vpc.n"}

    def test_cancel_after_last_action_keeps_run_successful(self, store):
        class LateCancel(FakeProvider):
            executor = None

            def create(self, kind, attributes):
                outputs = super().create(kind, attributes)
                if attributes.get("name") == "c":
                    self.executor.cancel()
                return outputs

        provider = LateCancel()
        executor = Executor(provider, store)
        provider.executor = executor
        result = executor.apply(_plan(stack_resources(), store))

        assert not result.cancelled
        assert result.ok
        assert len(result.succeeded) == 5

    def test_interrupt_while_waiting_on_a_layer(self, provider, store, monkeypatch):
        real_as_completed = executor_module.as_completed

        def interrupted(futures):
            for future in real_as_completed(futures):
                yield future
                raise KeyboardInterrupt

        monkeypatch.setattr(executor_module, "as_completed", interrupted)
        result = Executor(provider, store, concurrency=1).apply(_plan(stack_resources(), store))

        assert result.cancelled
        statuses = dict(_statuses(result))
        assert statuses["aws_vpc.n"] == OutcomeStatus.SUCCEEDED
        assert statuses["aws_security_group.s"] == OutcomeStatus.NOT_ATTEMPTED
        assert statuses["aws_ecs_service.c"] == OutcomeStatus.NOT_ATTEMPTED
        assert set(store.load()) == {o.action.resource_id for o in result.succeeded}
        assert "s" not in provider.ops("create")
        assert "c" not in provider.ops("create")

    def test_interrupt_between_layers(self, provider, store, monkeypatch):
        run_layer = Executor._run_layer

        def run_then_interrupt(self, actions):
            run_layer(self, actions)
            raise KeyboardInterrupt

        monkeypatch.setattr(Executor, "_run_layer", run_then_interrupt)
        result = Executor(provider, store).apply(_plan(stack_resources(), store))

        assert result.cancelled
        assert _statuses(result) == [
            ("aws_vpc.n", OutcomeStatus.SUCCEEDED),
            ("aws_ecr_repository.r", OutcomeStatus.SUCCEEDED),
            ("aws_iam_role.g", OutcomeStatus.SUCCEEDED),
            ("aws_security_group.s", OutcomeStatus.NOT_ATTEMPTED),
            ("aws_ecs_service.c", OutcomeStatus.NOT_ATTEMPTED),
        ]
        assert set(store.load()) == {"aws_vpc.n", "aws_ecr_repository.r", "aws_iam_role.g"}


class TestReplacementAndDestroy:
    def _replace_vpc(self):
        return [
            make_resource(r.resource_type, r.name, **{**r.attributes, "cidr_block": "10.9.0.0/16"})
            if r.resource_id == "aws_vpc.n" else r
            for r in stack_resources()
        ]

    def test_replacement_cleans_up_old_instances(self, provider, store):
        _run(stack_resources(), provider, store)
        old_vpc = store.load()["aws_vpc.n"].provider_id

        result = _run(self._replace_vpc(), provider, store)
        assert result.ok
        state = store.load()
        assert state["aws_vpc.n"].provider_id != old_vpc
        assert state["aws_vpc.n"].deposed == []
        assert old_vpc not in provider.objects
        assert len(provider.objects) == 5
        assert state["aws_security_group.s"].resolved["vpc_id"] == state["aws_vpc.n"].provider_id

    def test_failed_cleanup_is_resumed(self, store):
        class FlakyDestroy(FakeProvider):
            failures = 1

            def destroy(self, provider_id):
                if self.failures:
                    self.failures -= 1
                    raise RuntimeError("transient")
                super().destroy(provider_id)

        flaky = FlakyDestroy()
        _run(stack_resources(), flaky, store)
        old_sg = store.load()["aws_security_group.s"].provider_id

        result = _run(self._replace_vpc(), flaky, store)
        assert not result.ok
        assert store.load()["aws_security_group.s"].deposed == [old_sg]

        plan = _plan(self._replace_vpc(), store)
        assert {a.action_type.value for a in plan} == {"destroy"}
        assert all(a.deposed_id for a in plan)

        result = Executor(flaky, store).apply(plan)
        assert result.ok
        assert all(not s.deposed for s in store.load().values())
        assert len(flaky.objects) == 5

    def test_sibling_deposed_instances_all_cleared(self):
        class SlowStore(MemoryStateStore):
            def commit(self, resource_id, state):
                time.sleep(0.05)
                super().commit(resource_id, state)

        class PairedDestroy(FakeProvider):
            barrier = threading.Barrier(2, timeout=5)

            def destroy(self, provider_id):
                self.barrier.wait()
                super().destroy(provider_id)

        provider, store = PairedDestroy(), SlowStore()
        resources = [make_resource("aws_iam_role", "g", name="g")]
        _run(resources, provider, store)
        live = store.load()["aws_iam_role.g"]
        provider.objects.update({"old1": {}, "old2": {}})
        store.commit(live.resource_id, replace(live, deposed=["old1", "old2"]))

        plan = _plan(resources, store)
        assert len(plan.layers()) == 1
        assert {a.deposed_id for a in plan} == {"old1", "old2"}

        result = Executor(provider, store, concurrency=4).apply(plan)
        assert result.ok
        assert store.load()["aws_iam_role.g"].deposed == []
        assert set(provider.objects) == {live.provider_id}
        assert _plan(resources, store).is_empty

    def test_teardown_empties_state_and_provider(self, provider, store):
        _run(stack_resources(), provider, store)
        result = Executor(provider, store).apply(planner.generate_teardown(store.load()))
        assert result.ok
        assert store.load() == {}
        assert provider.objects == {}
