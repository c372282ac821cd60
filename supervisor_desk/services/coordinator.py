import asyncio
from datetime import datetime
from typing import Callable, List, Optional

from supervisor_desk.core.logging import get_plain_logger
from supervisor_desk.models.schemas import (
    HelpRequest,
    HistoryPage,
    KnowledgeEntry,
    KnowledgeSource,
    LedgerStats,
    RequestStatus,
    ResolutionResult,
    SearchResponse,
    SessionEvent,
)
from supervisor_desk.services.help_request import EscalationLedger
from supervisor_desk.services.knowledge_base import KnowledgeStore, extract_tags
from supervisor_desk.services.matcher import Matcher
from supervisor_desk.services.notification import Notifier

logger = get_plain_logger(__name__)

LEARNED_CATEGORY = "supervisor-learned"

SessionListener = Callable[[SessionEvent], None]


class EscalationCoordinator:
    """
    Ties the matcher, the ledger and the notifier together

    - search: answer from the knowledge store when confident
    - handle_unknown: open a help request and page a supervisor
    - resolve: close the request, learn the answer, follow up with the caller
    - run_timeout_sweep: time out overdue requests, tell callers about the delay

    The ledger transition is always committed first; notifications, session
    events and the knowledge write that follow are best effort.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        matcher: Matcher,
        ledger: EscalationLedger,
        notifier: Notifier,
        session_listener: Optional[SessionListener] = None,
        sweep_interval_seconds: float = 60.0
    ):
        self.store = store
        self.matcher = matcher
        self.ledger = ledger
        self.notifier = notifier
        self.session_listener = session_listener
        self.sweep_interval_seconds = sweep_interval_seconds
        self._sweep_task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    async def search(self, question: str) -> SearchResponse:
        logger.info(f"🔍 Checking KB for: {question}")
        result = self.matcher.lookup(question)
        if not result.found:
            return SearchResponse(found=False, confidence=result.score)

        return SearchResponse(
            found=True,
            answer=result.entry.answer,
            confidence=result.entry.confidence,
            category=result.entry.category,
            entry_id=result.entry.id,
        )

    async def handle_unknown(
        self,
        question: str,
        caller_id: str,
        session_id: str,
        caller_name: Optional[str] = None,
        context: Optional[str] = None,
        confidence_score: Optional[float] = None
    ) -> HelpRequest:
        """
        Escalate a question the automated search could not answer

        Creation errors (ValidationError, DuplicateSessionError) propagate and
        leave nothing behind. Once created the request stays visible in
        list_pending even if paging the supervisor fails.
        """
        logger.info(f"📞 Escalating [{session_id}]: {question}")
        request = self.ledger.create(
            question=question,
            caller_id=caller_id,
            session_id=session_id,
            caller_name=caller_name,
            context=context,
            confidence_score=confidence_score,
        )

        try:
            await self.notifier.notify_human(request)
        except Exception as e:
            logger.error(f"Could not notify supervisor about request #{request.id}: {e}")

        if self.session_listener is not None:
            try:
                self.session_listener(SessionEvent(session_id=session_id, request_id=request.id))
            except Exception as e:
                logger.error(f"Session listener failed for request #{request.id}: {e}")

        return request

    escalate = handle_unknown

    async def claim(self, request_id: int, resolver_id: str) -> HelpRequest:
        return self.ledger.claim(request_id, resolver_id)

    async def resolve(self, request_id: int, human_response: str, resolver_id: str) -> ResolutionResult:
        """
        Supervisor answers a request

        This triggers:
        1. Ledger transition to resolved (errors propagate)
        2. Learned answer written to the knowledge store
        3. Follow up with the caller
        A failure in 2 or 3 is logged; the resolution stays committed and a
        store failure is reported on the result as learning_error.
        """
        request = self.ledger.resolve(request_id, human_response, resolver_id)

        knowledge_entry = None
        learning_error = None
        try:
            knowledge_entry = self.store.upsert(KnowledgeEntry(
                question=request.question,
                answer=request.human_response,
                category=LEARNED_CATEGORY,
                tags=extract_tags(request.question),
                source=KnowledgeSource.HUMAN_RESOLVED,
                created_by=resolver_id,
            ))
            logger.info(f"🧠 Learned KB entry #{knowledge_entry.id} from request #{request.id}")
        except Exception as e:
            learning_error = str(e)
            logger.error(f"Request #{request.id} resolved but KB write failed: {e}")

        try:
            await self.notifier.notify_caller_resolved(
                request.caller_id, request.question, request.human_response
            )
        except Exception as e:
            logger.error(f"Could not notify caller for request #{request.id}: {e}")

        return ResolutionResult(
            request=request,
            knowledge_entry=knowledge_entry,
            learning_error=learning_error,
        )

    async def run_timeout_sweep(self, now: Optional[datetime] = None) -> List[HelpRequest]:
        """Time out overdue requests; a failed notice for one caller doesn't stop the rest"""
        # blocking sqlite work runs off the event loop
        timed_out = await asyncio.to_thread(self.ledger.sweep_timeouts, now)
        for request in timed_out:
            try:
                await self.notifier.notify_caller_timed_out(request.caller_id, request.question)
            except Exception as e:
                logger.error(f"Could not send timeout notice for request #{request.id}: {e}")
        return timed_out

    # Read-only delegations

    def get_request(self, request_id: int) -> HelpRequest:
        return self.ledger.get(request_id)

    def list_pending(self) -> List[HelpRequest]:
        return self.ledger.list_pending()

    def list_history(
        self,
        status: Optional[RequestStatus] = None,
        caller_id: Optional[str] = None,
        limit: int = 50,
        skip: int = 0
    ) -> HistoryPage:
        return self.ledger.list_history(status=status, caller_id=caller_id, limit=limit, skip=skip)

    def stats(self) -> LedgerStats:
        return self.ledger.stats()

    # Background sweep lifecycle

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self):
        """Start the recurring timeout sweep on the running event loop"""
        if self.is_running:
            return
        self._stopping = asyncio.Event()
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="timeout-sweep")
        logger.info(f"Timeout sweep started (every {self.sweep_interval_seconds:g}s)")

    async def stop(self):
        if not self.is_running:
            return
        self._stopping.set()
        await self._sweep_task
        self._sweep_task = None
        logger.info("Timeout sweep stopped")

    async def _sweep_loop(self):
        while not self._stopping.is_set():
            try:
                await self.run_timeout_sweep()
            except Exception as e:
                logger.error(f"Timeout sweep failed: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
