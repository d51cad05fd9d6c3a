import os
import threading
import time

import pytest

from stackplan.errors import ResourceNotFoundError
from stackplan.models.resource import Resource, infer_kind
from stackplan.providers.base import Provider
from stackplan.store import MemoryStateStore

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


class FakeProvider(Provider):
    """
    In-memory provider that records every call.

    ``fail_on`` holds resource names whose create/update raises; ``delay``
    slows each call down so overlapping calls can be observed.
    """

    name = "fake"

    def __init__(self, fail_on=(), delay=0.0):
        self.objects = {}
        self.calls = []
        self.fail_on = set(fail_on)
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._seq = 0
        self._mutex = threading.Lock()

    def _enter(self, op, target):
        with self._mutex:
            self.calls.append((op, target))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.delay:
            time.sleep(self.delay)

    def _leave(self):
        with self._mutex:
            self.active -= 1

    def create(self, kind, attributes):
        name = attributes.get("name")
        self._enter("create", name)
        try:
            if name in self.fail_on:
                raise RuntimeError(f"injected failure creating {name}")
            with self._mutex:
                self._seq += 1
                pid = f"{kind.value}-{self._seq}"
                self.objects[pid] = dict(attributes)
            return {"id": pid, "arn": f"arn:fake:{pid}", "repository_url": f"registry.local/{name}"}
        finally:
            self._leave()

    def update(self, provider_id, attributes):
        self._enter("update", provider_id)
        try:
            if attributes.get("name") in self.fail_on:
                raise RuntimeError(f"injected failure updating {provider_id}")
            with self._mutex:
                if provider_id not in self.objects:
                    raise ResourceNotFoundError(provider_id)
                self.objects[provider_id] = dict(attributes)
            return {"arn": f"arn:fake:{provider_id}"}
        finally:
            self._leave()

    def destroy(self, provider_id):
        self._enter("destroy", provider_id)
        try:
            with self._mutex:
                if provider_id not in self.objects:
                    raise ResourceNotFoundError(provider_id)
                del self.objects[provider_id]
        finally:
            self._leave()

    def describe(self, provider_id):
        with self._mutex:
            if provider_id not in self.objects:
                raise ResourceNotFoundError(provider_id)
            return dict(self.objects[provider_id])

    def ops(self, op):
        return [target for kind, target in self.calls if kind == op]


def make_resource(rtype, rname, depends_on=(), **attributes):
    return Resource(
        resource_type=rtype,
        name=rname,
        kind=infer_kind(rtype),
        attributes=attributes,
        depends_on=list(depends_on),
        source_file="test.tf",
    )


def stack_resources():
    """
    network N, security policy S (needs N), registry R, identity role G and a
    compute service C consuming S, R and G; declared in that order.
    """
    return [
        make_resource("aws_vpc", "n", name="n", cidr_block="10.0.0.0/16"),
        make_resource("aws_security_group", "s", name="s", vpc_id="${aws_vpc.n.id}"),
        make_resource("aws_ecr_repository", "r", name="r"),
        make_resource("aws_iam_role", "g", name="g"),
        make_resource(
            "aws_ecs_service", "c",
            name="c",
            security_groups=["${aws_security_group.s.id}"],
            image="${aws_ecr_repository.r.repository_url}:latest",
            task_role_arn="${aws_iam_role.g.arn}",
        ),
    ]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store():
    return MemoryStateStore()
