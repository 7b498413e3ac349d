"""Evaluator Gateway: lifecycle of the external evaluation engine."""

import asyncio
import json
from typing import Awaitable, Callable, Optional, Protocol

import yaml
from loguru import logger

from vapview.exceptions import EngineLoadError, EngineNotReadyError
from vapview.models import EngineState


class EngineHandle(Protocol):
    async def evaluate(self, policy: str, resource: str, params: str) -> str:
        ...


EngineLoader = Callable[[], Awaitable[EngineHandle]]


class EvaluatorGateway:
    """
    Owns the engine for the whole process.

    ``load`` runs the loader at most once; every caller shares its outcome.
    A failed load is final: later calls re-raise the same error.
    """

    def __init__(self, loader: EngineLoader):
        self._loader = loader
        self._lock = asyncio.Lock()
        self._handle: Optional[EngineHandle] = None
        self._load_error: Optional[EngineLoadError] = None
        self.state = EngineState.NOT_LOADED

    @property
    def ready(self) -> bool:
        return self.state == EngineState.READY

    @property
    def load_error(self) -> Optional[str]:
        return str(self._load_error) if self._load_error else None

    async def load(self) -> EngineHandle:
        async with self._lock:
            if self.state == EngineState.READY:
                return self._handle
            if self.state == EngineState.LOAD_FAILED:
                raise self._load_error

            self.state = EngineState.LOADING
            logger.info("Loading policy evaluation engine")
            try:
                self._handle = await self._loader()
            except EngineLoadError as e:
                logger.error(f"Failed to load policy evaluation engine: {e}")
                self._load_error = e
                self.state = EngineState.LOAD_FAILED
                raise
            except Exception as e:
                logger.error(f"Unexpected error loading policy evaluation engine: {e}")
                self._load_error = EngineLoadError(str(e))
                self.state = EngineState.LOAD_FAILED
                raise self._load_error from e

            self.state = EngineState.READY
            logger.info("Policy evaluation engine ready")
            return self._handle

    async def evaluate(self, policy: str, resource: str, params: str) -> str:
        if self.state != EngineState.READY:
            raise EngineNotReadyError(f"Evaluation requested while engine is {self.state.value}")
        return await self._handle.evaluate(policy, resource, params)


def render_verdict(text: str) -> str:
    """Render a JSON verdict as YAML; anything else is returned unchanged."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return text
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
