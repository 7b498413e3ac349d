"""
Evaluation Orchestrator.

Decides when a policy test session is re-evaluated and which engine result is
shown. Every dispatched evaluation carries a sequence number; a result is only
accepted if it belongs to the most recently dispatched request and the
session is still evaluating. Engine calls are never cancelled, stale results
are dropped instead.

All methods run on the event loop; engine and cluster calls are spawned as
tasks and report back through ``_on_result`` and ``_on_params``.
"""

import asyncio
from typing import Callable, Optional, Set

from loguru import logger

from vapview.documents import DocumentStore
from vapview.exceptions import EngineLoadError, EvaluationEngineError
from vapview.gateway import EvaluatorGateway
from vapview.models import (
    DocumentKind,
    EvaluationRequest,
    EvaluationResult,
    OrchestratorState,
    ParamKindReference,
    ParamsDocument,
    ParamsState,
)
from vapview.params import ParamsResolver


ResultCallback = Callable[[EvaluationResult], None]


class EvaluationOrchestrator:

    def __init__(
        self,
        store: DocumentStore,
        gateway: EvaluatorGateway,
        resolver: ParamsResolver,
        on_result: Optional[ResultCallback] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.resolver = resolver
        self.on_result = on_result

        self.state = OrchestratorState.IDLE
        self.reason: Optional[str] = None
        self.result: Optional[EvaluationResult] = None
        self.accepted_sequence = 0

        self._sequence = 0
        self._params_generation = 0
        self._params_reference: Optional[ParamKindReference] = None
        self._params_task: Optional[asyncio.Task] = None
        self._engine_error: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()
        self._settled = asyncio.Event()
        self._closed = False

    @property
    def sequence(self) -> int:
        """Sequence number of the most recently dispatched request."""
        return self._sequence

    @property
    def verdict(self) -> Optional[EvaluationResult]:
        """The result on display: only a settled session shows one."""
        if self.state == OrchestratorState.SETTLED:
            return self.result
        return None

    def start(self):
        if self.state != OrchestratorState.IDLE:
            return

        self._set_state(OrchestratorState.AWAITING_PREREQUISITES)
        if not self.gateway.ready:
            self._spawn(self._load_engine())
        if self.store.policy.valid:
            self._refresh_params(self.store.param_kind)
        self._advance()

    def edit(self, kind: DocumentKind, text: str) -> bool:
        """
        Apply a user edit and re-evaluate if possible.

        Returns:
            False if the text was unchanged.
        """
        changed = self.store.edit(kind, text)
        if not changed or self._closed or self.state == OrchestratorState.IDLE:
            return changed

        if kind == DocumentKind.POLICY and self.store.policy.valid:
            reference = self.store.param_kind
            if reference != self._params_reference:
                logger.info(f"paramKind changed to {reference}, resolving params again")
                self._refresh_params(reference)

        self._advance()
        return True

    def evaluate_now(self) -> OrchestratorState:
        """Explicit trigger: evaluate the current documents if prerequisites allow."""
        if self.state != OrchestratorState.IDLE and not self._closed:
            self._advance()
        return self.state

    async def wait_settled(self, timeout: Optional[float] = None) -> OrchestratorState:
        """Wait until the session is Settled or Blocked."""
        await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        return self.state

    def close(self):
        self._closed = True
        if self._params_task is not None:
            self._params_task.cancel()
        logger.debug("Orchestrator closed")

    def _advance(self):
        """Re-derive the state from the prerequisites, dispatching when all are met."""
        if self._engine_error:
            self._set_state(OrchestratorState.BLOCKED, f"Evaluation engine unavailable: {self._engine_error}")
            return
        if not self.store.policy.valid:
            self._set_state(OrchestratorState.BLOCKED, self.store.policy.error)
            return
        if not self.store.resource.valid:
            self._set_state(OrchestratorState.BLOCKED, self.store.resource.error)
            return

        params = self.store.params
        if params.state == ParamsState.FETCH_FAILED:
            self._set_state(OrchestratorState.BLOCKED, f"Params unavailable: {params.reason}")
            return
        if params.state == ParamsState.FETCHING or not self.gateway.ready:
            self._set_state(OrchestratorState.AWAITING_PREREQUISITES)
            return

        self._dispatch()

    def _dispatch(self):
        self._sequence += 1
        request = self.store.snapshot(self._sequence)
        self._set_state(OrchestratorState.EVALUATING)
        logger.debug(f"Dispatching evaluation #{request.sequence}")
        self._spawn(self._evaluate(request))

    async def _evaluate(self, request: EvaluationRequest):
        try:
            verdict = await self.gateway.evaluate(request.policy, request.resource, request.params)
            result = EvaluationResult(sequence=request.sequence, verdict=verdict)
        except EvaluationEngineError as e:
            result = EvaluationResult(sequence=request.sequence, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in evaluation #{request.sequence}")
            result = EvaluationResult(sequence=request.sequence, error=f"Unexpected evaluation error: {e}")
        self._on_result(result)

    def _on_result(self, result: EvaluationResult):
        if self._closed or self.state != OrchestratorState.EVALUATING or result.sequence != self._sequence:
            logger.debug(f"Discarding stale result #{result.sequence} (latest is #{self._sequence})")
            return

        self.result = result
        self.accepted_sequence = result.sequence
        self._set_state(OrchestratorState.SETTLED)
        if self.on_result is not None:
            self.on_result(result)

    def _refresh_params(self, reference: Optional[ParamKindReference]):
        self._params_reference = reference
        self._params_generation += 1
        if self._params_task is not None and not self._params_task.done():
            self._params_task.cancel()
        self._params_task = None

        if reference is None:
            self.store.clear_params()
            return

        self.store.set_params_fetching(reference)
        self._params_task = self._spawn(self._resolve_params(reference, self._params_generation))

    async def _resolve_params(self, reference: ParamKindReference, generation: int):
        try:
            document = await self.resolver.resolve(reference)
        except Exception as e:
            logger.exception(f"Unexpected error resolving params for {reference.kind}")
            document = ParamsDocument(state=ParamsState.FETCH_FAILED, reference=reference, reason=str(e))
        self._on_params(document, generation)

    def _on_params(self, document: ParamsDocument, generation: int):
        if self._closed or generation != self._params_generation:
            logger.debug(f"Discarding params resolution {generation} (latest is {self._params_generation})")
            return

        if document.state == ParamsState.RESOLVED:
            self.store.set_params_resolved(document.reference, document.item)
        else:
            self.store.set_params_failed(document.reference, document.reason or "unknown error")

        if self.state != OrchestratorState.IDLE:
            self._advance()

    async def _load_engine(self):
        try:
            await self.gateway.load()
        except EngineLoadError as e:
            self._engine_error = str(e)

        if self._closed:
            return
        if self.state in (OrchestratorState.AWAITING_PREREQUISITES, OrchestratorState.BLOCKED):
            self._advance()

    def _set_state(self, state: OrchestratorState, reason: Optional[str] = None):
        if state != self.state or reason != self.reason:
            logger.debug(f"Orchestrator {self.state.value} -> {state.value}" + (f": {reason}" if reason else ""))
        self.state = state
        self.reason = reason
        if state in (OrchestratorState.SETTLED, OrchestratorState.BLOCKED):
            self._settled.set()
        else:
            self._settled.clear()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
