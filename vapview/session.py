import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from vapview.documents import DocumentStore
from vapview.exceptions import SessionNotFoundError
from vapview.gateway import EvaluatorGateway
from vapview.orchestrator import EvaluationOrchestrator
from vapview.params import ParamsResolver
from vapview.sanitizer import sanitize_to_text


@dataclass
class Session:
    session_id: str
    policy_name: str
    store: DocumentStore
    orchestrator: EvaluationOrchestrator
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SessionRegistry:
    """Open policy test sessions. All sessions share one evaluator gateway."""

    def __init__(self, gateway: EvaluatorGateway, resolver: ParamsResolver, max_sessions: int = 64):
        self.gateway = gateway
        self.resolver = resolver
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def open(self, raw_policy: Dict[str, Any], resource_text: Optional[str] = None) -> Session:
        """
        Start a test session for a policy fetched from the cluster.

        Raises:
            MalformedSourceError: If the policy cannot be sanitized.
        """
        policy_text = sanitize_to_text(raw_policy)
        store = DocumentStore(policy_text, resource_text)
        orchestrator = EvaluationOrchestrator(store, self.gateway, self.resolver)

        session = Session(
            session_id=uuid.uuid4().hex,
            policy_name=raw_policy["metadata"].get("name", ""),
            store=store,
            orchestrator=orchestrator,
        )

        while len(self._sessions) >= self.max_sessions:
            _, evicted = self._sessions.popitem(last=False)
            evicted.orchestrator.close()
            logger.info(f"Evicted session {evicted.session_id} for policy {evicted.policy_name}")

        self._sessions[session.session_id] = session
        orchestrator.start()
        logger.info(f"Opened session {session.session_id} for policy {session.policy_name}")
        return session

    def get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"Session {session_id} not found")

    def close(self, session_id: str):
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        session.orchestrator.close()
        logger.info(f"Closed session {session_id}")

    def close_all(self):
        for session_id in list(self._sessions):
            self.close(session_id)
