import asyncio
import json

import pytest

from vapview.documents import DocumentStore
from vapview.exceptions import DocumentStateError, EngineLoadError, EvaluationEngineError
from vapview.gateway import EvaluatorGateway
from vapview.models import DocumentKind, OrchestratorState, ParamsState
from vapview.orchestrator import EvaluationOrchestrator
from vapview.params import ParamsResolver
from vapview.sanitizer import sanitize_to_text

from conftest import FakeCluster, FakeEngine, make_gateway
from fixtures.k8s import params_object, policy_object, resource_text


FOO = {"apiVersion": "example.com/v1", "kind": "Foo"}
BAR = {"apiVersion": "example.com/v1", "kind": "Bar"}


def build(engine=None, cluster=None, param_kind=None, resource=None, gateway=None):
    engine = engine or FakeEngine()
    cluster = cluster or FakeCluster(items={"foos": params_object(), "bars": params_object("bar-params", kind="Bar")})
    store = DocumentStore(sanitize_to_text(policy_object(param_kind=param_kind)), resource)
    accepted = []
    orchestrator = EvaluationOrchestrator(
        store,
        gateway or make_gateway(engine),
        ParamsResolver(cluster),
        on_result=accepted.append,
    )
    return orchestrator, engine, cluster, accepted


def shown_resource(orchestrator):
    return json.loads(orchestrator.verdict.verdict)["resource"]


def policy_text(param_kind=None):
    return sanitize_to_text(policy_object(param_kind=param_kind))


@pytest.mark.asyncio
async def test_ready_engine_without_params_evaluates_once():
    orchestrator, engine, cluster, accepted = build()
    await orchestrator.gateway.load()

    orchestrator.start()
    assert orchestrator.state == OrchestratorState.EVALUATING

    assert await orchestrator.wait_settled(1) == OrchestratorState.SETTLED
    await asyncio.sleep(0.01)

    assert len(engine.calls) == 1
    assert [result.sequence for result in accepted] == [1]
    assert orchestrator.verdict.sequence == 1
    assert shown_resource(orchestrator) == "kubernetes-bootcamp"
    assert cluster.calls == []
    assert orchestrator.store.params.state == ParamsState.ABSENT


@pytest.mark.asyncio
async def test_waits_for_engine_before_evaluating():
    orchestrator, engine, _, accepted = build()

    orchestrator.start()
    assert orchestrator.state == OrchestratorState.AWAITING_PREREQUISITES
    assert engine.calls == []

    await orchestrator.wait_settled(1)

    assert orchestrator.state == OrchestratorState.SETTLED
    assert [result.sequence for result in accepted] == [1]


@pytest.mark.asyncio
async def test_rapid_edits_show_only_the_last_result():
    orchestrator, engine, _, accepted = build(engine=FakeEngine(delays=[0, 0.05, 0.05]))
    orchestrator.start()
    await orchestrator.wait_settled(1)
    accepted.clear()

    orchestrator.edit(DocumentKind.RESOURCE, resource_text("first"))
    await asyncio.sleep(0.01)
    orchestrator.edit(DocumentKind.RESOURCE, resource_text("second"))

    await orchestrator.wait_settled(1)
    await asyncio.sleep(0.1)

    assert len(engine.calls) == 3
    assert [result.sequence for result in accepted] == [3]
    assert orchestrator.verdict.sequence == 3
    assert shown_resource(orchestrator) == "second"


@pytest.mark.asyncio
async def test_late_stale_result_is_discarded():
    # The first edit's evaluation finishes after the second one
    orchestrator, _, _, accepted = build(engine=FakeEngine(delays=[0, 0.1, 0.01]))
    orchestrator.start()
    await orchestrator.wait_settled(1)

    orchestrator.edit(DocumentKind.RESOURCE, resource_text("first"))
    orchestrator.edit(DocumentKind.RESOURCE, resource_text("second"))
    await orchestrator.wait_settled(1)
    assert shown_resource(orchestrator) == "second"

    await asyncio.sleep(0.15)

    assert [result.sequence for result in accepted] == [1, 3]
    assert shown_resource(orchestrator) == "second"
    assert orchestrator.state == OrchestratorState.SETTLED


@pytest.mark.asyncio
async def test_unchanged_edit_does_not_evaluate():
    orchestrator, engine, _, _ = build()
    orchestrator.start()
    await orchestrator.wait_settled(1)

    assert orchestrator.edit(DocumentKind.RESOURCE, orchestrator.store.resource.text) is False
    assert orchestrator.sequence == 1
    assert len(engine.calls) == 1


@pytest.mark.asyncio
async def test_policy_parse_failure_blocks_without_calling_engine():
    orchestrator, engine, _, _ = build()
    orchestrator.start()
    await orchestrator.wait_settled(1)

    orchestrator.edit(DocumentKind.POLICY, "spec: [unclosed")

    assert orchestrator.state == OrchestratorState.BLOCKED
    assert orchestrator.reason.startswith("Invalid policy YAML")
    assert orchestrator.verdict is None
    assert len(engine.calls) == 1

    orchestrator.edit(DocumentKind.POLICY, policy_text())
    await orchestrator.wait_settled(1)

    assert orchestrator.state == OrchestratorState.SETTLED
    assert orchestrator.verdict.sequence == 2


@pytest.mark.asyncio
async def test_block_discards_in_flight_result():
    orchestrator, engine, _, accepted = build(engine=FakeEngine(delays=[0.05]))
    await orchestrator.gateway.load()
    orchestrator.start()

    orchestrator.edit(DocumentKind.RESOURCE, "- not\n- a mapping\n")
    await asyncio.sleep(0.1)

    assert orchestrator.state == OrchestratorState.BLOCKED
    assert "must be a YAML mapping" in orchestrator.reason
    assert accepted == []
    assert len(engine.calls) == 1


@pytest.mark.asyncio
async def test_initial_policy_parse_failure_blocks():
    engine = FakeEngine()
    store = DocumentStore("metadata: {name: [")
    orchestrator = EvaluationOrchestrator(store, make_gateway(engine), ParamsResolver(FakeCluster()))

    orchestrator.start()

    assert orchestrator.state == OrchestratorState.BLOCKED
    await asyncio.sleep(0.01)
    assert orchestrator.state == OrchestratorState.BLOCKED
    assert engine.calls == []


@pytest.mark.asyncio
async def test_params_are_resolved_before_evaluation():
    orchestrator, engine, cluster, accepted = build(param_kind=FOO)
    await orchestrator.gateway.load()

    orchestrator.start()
    assert orchestrator.state == OrchestratorState.AWAITING_PREREQUISITES
    assert orchestrator.store.params.state == ParamsState.FETCHING

    await orchestrator.wait_settled(1)

    assert cluster.calls == [("example.com", "v1", "foos")]
    assert orchestrator.store.params.state == ParamsState.RESOLVED
    assert "replica-limits" in engine.calls[0][2]
    assert json.loads(orchestrator.verdict.verdict)["params"] == "replica-limits"
    assert [result.sequence for result in accepted] == [1]


@pytest.mark.asyncio
async def test_params_failure_blocks_until_param_kind_changes():
    orchestrator, engine, cluster, _ = build(param_kind=BAR, cluster=FakeCluster(items={"foos": params_object()}))
    orchestrator.start()
    await orchestrator.wait_settled(1)

    assert orchestrator.state == OrchestratorState.BLOCKED
    assert orchestrator.reason == "Params unavailable: No Bar objects found in example.com/v1"
    assert orchestrator.store.params.state == ParamsState.FETCH_FAILED

    # Other edits, including to the rest of the policy, stay blocked
    orchestrator.edit(DocumentKind.RESOURCE, resource_text("other"))
    assert orchestrator.evaluate_now() == OrchestratorState.BLOCKED
    await asyncio.sleep(0.01)
    assert engine.calls == []
    assert cluster.calls == [("example.com", "v1", "bars")]

    orchestrator.edit(DocumentKind.POLICY, policy_text(param_kind=FOO))
    assert orchestrator.state == OrchestratorState.AWAITING_PREREQUISITES
    await orchestrator.wait_settled(1)

    assert orchestrator.state == OrchestratorState.SETTLED
    assert cluster.calls[-1] == ("example.com", "v1", "foos")
    assert len(engine.calls) == 1


@pytest.mark.asyncio
async def test_superseded_params_resolution_is_discarded():
    cluster = FakeCluster(
        items={"foos": params_object("foo-params"), "bars": params_object("bar-params", kind="Bar")},
        delays={"foos": 0.1},
    )
    orchestrator, engine, _, accepted = build(param_kind=FOO, cluster=cluster)
    orchestrator.start()

    await asyncio.sleep(0.01)
    orchestrator.edit(DocumentKind.POLICY, policy_text(param_kind=BAR))
    await orchestrator.wait_settled(1)
    await asyncio.sleep(0.15)

    assert orchestrator.store.params.reference.kind == "Bar"
    assert json.loads(orchestrator.verdict.verdict)["params"] == "bar-params"
    assert len(accepted) == 1
    assert all("foo-params" not in params for _, _, params in engine.calls)


@pytest.mark.asyncio
async def test_removing_param_kind_drops_params():
    orchestrator, engine, _, _ = build(param_kind=FOO)
    orchestrator.start()
    await orchestrator.wait_settled(1)

    orchestrator.edit(DocumentKind.POLICY, policy_text())
    await orchestrator.wait_settled(1)

    assert orchestrator.store.params.state == ParamsState.ABSENT
    assert engine.calls[-1][2] == ""


@pytest.mark.asyncio
async def test_edited_params_are_evaluated():
    orchestrator, engine, _, _ = build(param_kind=FOO)
    orchestrator.start()
    await orchestrator.wait_settled(1)

    orchestrator.edit(DocumentKind.PARAMS, "metadata:\n  name: hand-edited\n")
    await orchestrator.wait_settled(1)

    assert orchestrator.verdict.sequence == 2
    assert json.loads(orchestrator.verdict.verdict)["params"] == "hand-edited"
    assert engine.calls[-1][2] == "metadata:\n  name: hand-edited\n"


@pytest.mark.asyncio
async def test_params_edit_before_resolution_is_rejected():
    cluster = FakeCluster(items={"foos": params_object()}, delays={"foos": 0.05})
    orchestrator, _, _, _ = build(param_kind=FOO, cluster=cluster)
    orchestrator.start()

    with pytest.raises(DocumentStateError):
        orchestrator.edit(DocumentKind.PARAMS, "spec: {}")

    orchestrator.close()


@pytest.mark.asyncio
async def test_engine_load_failure_blocks_session():
    async def loader():
        raise EngineLoadError("Evaluator binary not found")

    orchestrator, engine, _, _ = build(gateway=EvaluatorGateway(loader))
    orchestrator.start()
    await orchestrator.wait_settled(1)

    assert orchestrator.state == OrchestratorState.BLOCKED
    assert orchestrator.reason == "Evaluation engine unavailable: Evaluator binary not found"

    orchestrator.edit(DocumentKind.RESOURCE, resource_text("other"))
    orchestrator.evaluate_now()
    assert orchestrator.state == OrchestratorState.BLOCKED
    assert engine.calls == []


@pytest.mark.asyncio
async def test_engine_error_is_shown_as_result():
    orchestrator, _, _, accepted = build(engine=FakeEngine(error=EvaluationEngineError("failed to parse policy YAML")))
    orchestrator.start()
    await orchestrator.wait_settled(1)

    assert orchestrator.state == OrchestratorState.SETTLED
    assert not orchestrator.verdict.ok
    assert orchestrator.verdict.error == "failed to parse policy YAML"
    assert accepted[0].verdict is None


@pytest.mark.asyncio
async def test_evaluate_now_issues_new_request():
    orchestrator, engine, _, accepted = build()
    orchestrator.start()
    await orchestrator.wait_settled(1)

    assert orchestrator.evaluate_now() == OrchestratorState.EVALUATING
    await orchestrator.wait_settled(1)

    assert [result.sequence for result in accepted] == [1, 2]
    assert len(engine.calls) == 2


@pytest.mark.asyncio
async def test_edits_before_start_are_only_stored():
    orchestrator, engine, _, _ = build()

    orchestrator.edit(DocumentKind.RESOURCE, resource_text("early"))
    assert orchestrator.state == OrchestratorState.IDLE
    assert orchestrator.evaluate_now() == OrchestratorState.IDLE

    orchestrator.start()
    await orchestrator.wait_settled(1)

    assert len(engine.calls) == 1
    assert shown_resource(orchestrator) == "early"


@pytest.mark.asyncio
async def test_closed_orchestrator_ignores_results():
    orchestrator, _, _, accepted = build(engine=FakeEngine(delays=[0.05]))
    await orchestrator.gateway.load()
    orchestrator.start()

    orchestrator.close()
    await asyncio.sleep(0.1)

    assert accepted == []
    assert orchestrator.state == OrchestratorState.EVALUATING
