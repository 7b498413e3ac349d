# conftest.py
"""
Shared fakes and fixtures for the policy viewer tests
"""

import asyncio
import json
import os
import stat

import pytest
import yaml

from vapview.exceptions import ClusterApiError, ResourceNotFoundError
from vapview.gateway import EvaluatorGateway
from vapview.params import ParamsResolver

from fixtures.k8s import params_object, policy_object


class FakeEngine:
    """Engine handle that reports which resource it saw."""

    def __init__(self, delays=None, error=None):
        self.delays = list(delays or [])
        self.error = error
        self.calls = []

    async def evaluate(self, policy, resource, params):
        index = len(self.calls)
        self.calls.append((policy, resource, params))
        if index < len(self.delays):
            await asyncio.sleep(self.delays[index])
        if self.error is not None:
            raise self.error

        resource_name = yaml.safe_load(resource)["metadata"]["name"]
        params_data = yaml.safe_load(params) if params else None
        return json.dumps(
            {
                "validations": [{"name": "spec.validations[0].expression", "result": True}],
                "resource": resource_name,
                "params": (params_data or {}).get("metadata", {}).get("name"),
            }
        )


class FakeCluster:
    """In-memory stand-in for the Kubernetes API client."""

    def __init__(self, policies=None, items=None, delays=None, error=None):
        self.policies = {p["metadata"]["name"]: p for p in (policies or [])}
        self.items = items or {}
        self.delays = delays or {}
        self.error = error
        self.calls = []

    async def get_policy(self, name):
        if name not in self.policies:
            raise ResourceNotFoundError(f"{name} not found")
        return self.policies[name]

    async def list_policies(self):
        return list(self.policies.values())

    async def get_first_item(self, group, version, plural):
        self.calls.append((group, version, plural))
        if plural in self.delays:
            await asyncio.sleep(self.delays[plural])
        if self.error is not None:
            raise self.error
        return self.items.get(plural)

    async def aclose(self):
        pass


VERSION = 'if [ "$1" = "--version" ]; then echo "vap-eval 0.3.0"; exit 0; fi\n'


def write_script(path, body):
    """Write an executable shell script standing in for the evaluator binary."""
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_gateway(engine):
    async def loader():
        return engine

    return EvaluatorGateway(loader)


@pytest.fixture(autouse=True)
def env():
    original_env = os.environ.copy()

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def gateway(engine):
    return make_gateway(engine)


@pytest.fixture
def cluster():
    return FakeCluster(
        policies=[
            policy_object("demo-policy", labels={"controlId": "C-0001"}),
            policy_object(
                "params-policy",
                param_kind={"apiVersion": "example.com/v1", "kind": "Foo"},
            ),
        ],
        items={"foos": params_object()},
    )


@pytest.fixture
def failing_cluster():
    return FakeCluster(error=ClusterApiError("connection refused"))


@pytest.fixture
def resolver(cluster):
    return ParamsResolver(cluster)
