import asyncio
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from loguru import logger

from vapview.config import PolicyViewerConfig
from vapview.documents import parse_policy_spec
from vapview.exceptions import (
    ClusterApiError,
    DocumentStateError,
    EngineLoadError,
    MalformedSourceError,
    ResourceNotFoundError,
    SessionNotFoundError,
)
from vapview.gateway import EvaluatorGateway, render_verdict
from vapview.models import DocumentKind, ParamKindReference
from vapview.params import ParamsResolver
from vapview.providers.cluster import ClusterClient
from vapview.providers.engine import load_subprocess_engine
from vapview.responses import (
    DocumentEdit,
    DocumentView,
    HealthResponse,
    ParamKindInfo,
    ParamsView,
    PolicyDetail,
    PolicySummary,
    ResultView,
    SessionView,
)
from vapview.sanitizer import sanitize, sanitize_to_text
from vapview.server import WebServer
from vapview.session import Session, SessionRegistry


def _param_kind_info(reference: Optional[ParamKindReference]) -> Optional[ParamKindInfo]:
    if reference is None:
        return None
    return ParamKindInfo(api_version=reference.api_version, kind=reference.kind)


def session_view(session: Session) -> SessionView:
    """Build the display model of a test session."""
    store = session.store
    orchestrator = session.orchestrator

    result = None
    if orchestrator.verdict is not None:
        accepted = orchestrator.verdict
        result = ResultView(
            sequence=accepted.sequence,
            verdict=render_verdict(accepted.verdict) if accepted.ok else None,
            error=accepted.error,
        )

    return SessionView(
        id=session.session_id,
        policy_name=session.policy_name,
        state=orchestrator.state.value,
        reason=orchestrator.reason,
        sequence=orchestrator.sequence,
        result=result,
        policy=DocumentView(
            text=store.policy.text,
            valid=store.policy.valid,
            dirty=store.policy.dirty,
            error=store.policy.error,
        ),
        resource=DocumentView(
            text=store.resource.text,
            valid=store.resource.valid,
            dirty=store.resource.dirty,
            error=store.resource.error,
        ),
        params=ParamsView(
            state=store.params.state.value,
            text=store.params.text,
            dirty=store.params_dirty,
            reason=store.params.reason,
            param_kind=_param_kind_info(store.params.reference),
        ),
    )


class PolicyViewerServer(WebServer):
    """Lists ValidatingAdmissionPolicies and runs interactive test sessions against them."""

    def __init__(
        self,
        config: PolicyViewerConfig,
        cluster: Optional[ClusterClient] = None,
        gateway: Optional[EvaluatorGateway] = None,
    ):
        self._owns_cluster = cluster is None
        self.cluster = cluster or ClusterClient(config)
        self.gateway = gateway or EvaluatorGateway(
            lambda: load_subprocess_engine(config.engine_binary, config.engine_timeout)
        )
        self.sessions = SessionRegistry(
            self.gateway,
            ParamsResolver(self.cluster),
            max_sessions=config.max_sessions,
        )
        super().__init__(config)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Load the engine up front and release the API client on shutdown."""
        preload = asyncio.create_task(self._preload_engine())
        yield
        preload.cancel()
        self.sessions.close_all()
        if self._owns_cluster:
            await self.cluster.aclose()
        logger.info("Policy viewer shutdown complete")

    async def _preload_engine(self):
        try:
            await self.gateway.load()
        except EngineLoadError:
            logger.warning("Policy evaluation is unavailable for this process")

    def _setup_routes(self):
        """Setup web routes."""
        self.app.add_api_route("/health", self.health, methods=["GET"], response_model=HealthResponse)
        self.app.add_api_route(
            "/policies",
            self.list_policies,
            methods=["GET"],
            response_model=List[PolicySummary],
            summary="List validating admission policies",
        )
        self.app.add_api_route(
            "/policies/{name}",
            self.get_policy,
            methods=["GET"],
            response_model=PolicyDetail,
            summary="Show a validating admission policy",
        )
        self.app.add_api_route(
            "/policies/{name}/sessions",
            self.open_session,
            methods=["POST"],
            response_model=SessionView,
            status_code=status.HTTP_201_CREATED,
            summary="Start a test session for a policy",
        )
        self.app.add_api_route(
            "/sessions/{session_id}",
            self.get_session,
            methods=["GET"],
            response_model=SessionView,
            summary="Show a test session and its current verdict",
        )
        self.app.add_api_route(
            "/sessions/{session_id}/documents/{kind}",
            self.edit_document,
            methods=["PUT"],
            response_model=SessionView,
            summary="Edit the policy, resource or params document",
        )
        self.app.add_api_route(
            "/sessions/{session_id}/evaluate",
            self.evaluate,
            methods=["POST"],
            response_model=SessionView,
            summary="Evaluate the current documents",
        )
        self.app.add_api_route(
            "/sessions/{session_id}",
            self.close_session,
            methods=["DELETE"],
            status_code=status.HTTP_204_NO_CONTENT,
            summary="Close a test session",
        )

        self.app.add_exception_handler(Exception, self.unexpected_error_handler)

    async def unexpected_error_handler(self, request: Request, exc: Exception):
        """Report unhandled failures as 500s."""
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    async def health(self) -> HealthResponse:
        return HealthResponse(status="ok", engine=self.gateway.state.value)

    async def list_policies(self) -> List[PolicySummary]:
        try:
            policies = await self.cluster.list_policies()
        except ClusterApiError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

        return [
            PolicySummary(
                name=policy.get("metadata", {}).get("name", ""),
                control=(policy.get("metadata", {}).get("labels") or {}).get("controlId", ""),
            )
            for policy in policies
        ]

    async def get_policy(self, name: str) -> PolicyDetail:
        raw_policy = await self._fetch_policy(name)
        try:
            policy = sanitize(raw_policy)
        except MalformedSourceError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

        spec = parse_policy_spec(policy)
        return PolicyDetail(
            name=spec.name or name,
            messages=spec.messages,
            param_kind=_param_kind_info(spec.param_kind),
            policy=sanitize_to_text(policy),
        )

    async def open_session(self, name: str, resource: Optional[DocumentEdit] = Body(None)) -> SessionView:
        raw_policy = await self._fetch_policy(name)
        try:
            session = self.sessions.open(raw_policy, resource.text if resource else None)
        except MalformedSourceError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
        return session_view(session)

    async def get_session(
        self,
        session_id: str,
        wait: float = Query(0, ge=0, le=60, description="Seconds to wait for the session to settle"),
    ) -> SessionView:
        session = self._get_session(session_id)
        await self._wait(session, wait)
        return session_view(session)

    async def edit_document(
        self,
        session_id: str,
        kind: DocumentKind,
        edit: DocumentEdit,
        wait: float = Query(0, ge=0, le=60, description="Seconds to wait for the session to settle"),
    ) -> SessionView:
        session = self._get_session(session_id)
        try:
            session.orchestrator.edit(kind, edit.text)
        except DocumentStateError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        await self._wait(session, wait)
        return session_view(session)

    async def evaluate(
        self,
        session_id: str,
        wait: float = Query(0, ge=0, le=60, description="Seconds to wait for the session to settle"),
    ) -> SessionView:
        session = self._get_session(session_id)
        session.orchestrator.evaluate_now()
        await self._wait(session, wait)
        return session_view(session)

    async def close_session(self, session_id: str):
        try:
            self.sessions.close(session_id)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    async def _fetch_policy(self, name: str) -> dict:
        try:
            return await self.cluster.get_policy(name)
        except ResourceNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Policy {name} not found")
        except ClusterApiError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    def _get_session(self, session_id: str) -> Session:
        try:
            return self.sessions.get(session_id)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @staticmethod
    async def _wait(session: Session, wait: float):
        if wait <= 0:
            return
        try:
            await session.orchestrator.wait_settled(wait)
        except asyncio.TimeoutError:
            logger.debug(f"Session {session.session_id} still {session.orchestrator.state.value} after {wait}s")


def configure_logging(debug: bool):
    if debug:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")
        logger.debug("Debug mode enabled")


def run():
    """Main entry point."""
    try:
        # Load configuration using Pydantic
        config = PolicyViewerConfig()

        configure_logging(config.debug)
        logger.debug(f"Configuration: {config.export_json()}")

        if not config.tls_cert_path or not config.tls_key_path:
            logger.warning("TLS certificates not configured, running in insecure mode")

        server = PolicyViewerServer(config)
        server.run()

    except Exception as e:
        logger.exception(f"Failed to start policy viewer: {e}")
        raise


if __name__ == "__main__":
    run()
