import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from supervisor_desk.core.database import connect, init_schema, to_db_time, utcnow
from supervisor_desk.core.exceptions import (
    DuplicateSessionError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from supervisor_desk.core.logging import get_plain_logger
from supervisor_desk.models.schemas import (
    OPEN_STATUSES,
    HelpRequest,
    HelpRequestMetadata,
    HistoryPage,
    LedgerStats,
    RequestStatus,
)

logger = get_plain_logger(__name__)

_OPEN_SQL = "(" + ", ".join(f"'{s.value}'" for s in OPEN_STATUSES) + ")"


class EscalationLedger:
    """
    Authoritative record of help requests from AI to human supervisor

    Every move out of an open state is a conditional UPDATE keyed by request
    id, so a resolution racing the timeout sweep commits exactly one terminal
    state. Open states: pending, in_progress. Terminal: resolved, timeout.
    """

    def __init__(
        self,
        db_path: str = "supervisor_desk.db",
        escalation_window: timedelta = timedelta(minutes=30),
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db_path = db_path
        self.escalation_window = escalation_window
        self.timeout = timeout
        self.clock = clock
        init_schema(self.db_path, "help_requests.sql", self.timeout)

    def _connect(self):
        return connect(self.db_path, self.timeout)

    @staticmethod
    def _row_to_request(row: sqlite3.Row) -> HelpRequest:
        return HelpRequest(
            id=row["id"],
            question=row["question"],
            caller_id=row["caller_id"],
            caller_name=row["caller_name"],
            session_id=row["session_id"],
            status=row["status"],
            human_response=row["human_response"],
            resolver_id=row["resolver_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            timeout_at=row["timeout_at"],
            resolved_at=row["resolved_at"],
            metadata=HelpRequestMetadata(
                attempted_knowledge_search=bool(row["attempted_knowledge_search"]),
                confidence_score=row["confidence_score"],
                context=row["context"],
            ),
        )

    def create(
        self,
        question: str,
        caller_id: str,
        session_id: str,
        caller_name: Optional[str] = None,
        context: Optional[str] = None,
        confidence_score: Optional[float] = None,
        attempted_knowledge_search: bool = True
    ) -> HelpRequest:
        """
        Open a new pending help request

        Raises:
            ValidationError: question, caller_id or session_id is empty
            DuplicateSessionError: the session already has an open request
        """
        question = (question or "").strip()
        caller_id = (caller_id or "").strip()
        session_id = (session_id or "").strip()
        if not question:
            raise ValidationError("Help request question must not be empty")
        if not caller_id:
            raise ValidationError("Help request caller_id must not be empty")
        if not session_id:
            raise ValidationError("Help request session_id must not be empty")
        if confidence_score is not None and not 0.0 <= confidence_score <= 1.0:
            raise ValidationError("confidence_score must be between 0 and 1")

        now = self.clock()
        timeout_at = now + self.escalation_window

        try:
            with self._connect() as conn:
                cursor = conn.execute("""
                    INSERT INTO help_requests
                    (question, caller_id, caller_name, session_id, status,
                     attempted_knowledge_search, confidence_score, context,
                     created_at, updated_at, timeout_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    question,
                    caller_id,
                    caller_name,
                    session_id,
                    RequestStatus.PENDING.value,
                    int(attempted_knowledge_search),
                    confidence_score,
                    context,
                    to_db_time(now),
                    to_db_time(now),
                    to_db_time(timeout_at),
                ))
                request_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            # Only the partial unique index on open sessions can fire here
            raise DuplicateSessionError(session_id) from e

        logger.info(f"📝 Created help request #{request_id} [session {session_id}]: {question[:50]}")
        return self.get(request_id)

    def claim(self, request_id: int, resolver_id: str) -> HelpRequest:
        """Advisory pending -> in_progress move when a supervisor picks a request up"""
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE help_requests
                SET status = ?,
                    resolver_id = ?,
                    updated_at = ?
                WHERE id = ?
                AND status = ?
            """, (
                RequestStatus.IN_PROGRESS.value,
                resolver_id,
                to_db_time(self.clock()),
                request_id,
                RequestStatus.PENDING.value,
            ))
            if cursor.rowcount == 0:
                self._raise_for_failed_transition(conn, request_id, "claim")

        logger.info(f"🙋 Request #{request_id} claimed by {resolver_id}")
        return self.get(request_id)

    def resolve(self, request_id: int, human_response: str, resolver_id: str) -> HelpRequest:
        """
        Supervisor answers an open request

        Raises:
            ValidationError: empty response
            NotFoundError: no such request
            InvalidStateError: request is already resolved or timed out
        """
        human_response = (human_response or "").strip()
        if not human_response:
            raise ValidationError("Supervisor response must not be empty")

        now = to_db_time(self.clock())
        with self._connect() as conn:
            cursor = conn.execute(f"""
                UPDATE help_requests
                SET status = ?,
                    human_response = ?,
                    resolver_id = ?,
                    resolved_at = ?,
                    updated_at = ?
                WHERE id = ?
                AND status IN {_OPEN_SQL}
            """, (
                RequestStatus.RESOLVED.value,
                human_response,
                resolver_id,
                now,
                now,
                request_id,
            ))
            if cursor.rowcount == 0:
                self._raise_for_failed_transition(conn, request_id, "resolve")

        logger.info(f"✅ Resolved request #{request_id} by {resolver_id}")
        return self.get(request_id)

    def sweep_timeouts(self, now: Optional[datetime] = None) -> List[HelpRequest]:
        """
        Time out every open request whose deadline has passed

        Each candidate is moved with its own conditional UPDATE; one that was
        resolved in the meantime is skipped rather than overwritten.

        Returns:
            Only the requests this call moved to timeout
        """
        now = now or self.clock()
        cutoff = to_db_time(now)

        with self._connect() as conn:
            candidates = [
                row["id"] for row in conn.execute(f"""
                    SELECT id FROM help_requests
                    WHERE status IN {_OPEN_SQL}
                    AND timeout_at <= ?
                    ORDER BY timeout_at, id
                """, (cutoff,))
            ]

        timed_out = []
        for request_id in candidates:
            with self._connect() as conn:
                cursor = conn.execute(f"""
                    UPDATE help_requests
                    SET status = ?,
                        updated_at = ?
                    WHERE id = ?
                    AND status IN {_OPEN_SQL}
                """, (RequestStatus.TIMEOUT.value, cutoff, request_id))
                won = cursor.rowcount == 1
            if won:
                timed_out.append(self.get(request_id))

        if timed_out:
            logger.warning(f"⏰ Marked {len(timed_out)} requests as timed out")
        return timed_out

    def _raise_for_failed_transition(self, conn: sqlite3.Connection, request_id: int, action: str):
        row = conn.execute("SELECT status FROM help_requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFoundError("Help request", request_id)
        raise InvalidStateError(request_id, row["status"], action)

    # Read-only projections

    def get(self, request_id: int) -> HelpRequest:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM help_requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFoundError("Help request", request_id)
        return self._row_to_request(row)

    def list_pending(self) -> List[HelpRequest]:
        """Open requests for the supervisor dashboard, newest first"""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT * FROM help_requests
                WHERE status IN {_OPEN_SQL}
                ORDER BY created_at DESC, id DESC
            """).fetchall()
        return [self._row_to_request(r) for r in rows]

    def list_history(
        self,
        status: Optional[RequestStatus] = None,
        caller_id: Optional[str] = None,
        limit: int = 50,
        skip: int = 0
    ) -> HistoryPage:
        """All requests matching the filters, newest first, with the unpaginated total"""
        if limit < 1 or skip < 0:
            raise ValidationError("limit must be positive and skip non-negative")

        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(RequestStatus(status).value)
        if caller_id:
            clauses.append("caller_id = ?")
            params.append(caller_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM help_requests {where}", params).fetchone()[0]
            rows = conn.execute(f"""
                SELECT * FROM help_requests
                {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
            """, (*params, limit, skip)).fetchall()

        return HistoryPage(
            requests=[self._row_to_request(r) for r in rows],
            total=total,
            limit=limit,
            skip=skip,
        )

    def stats(self) -> LedgerStats:
        """Get statistics for dashboard"""
        with self._connect() as conn:
            result = conn.execute("""
                SELECT
                    COUNT(CASE WHEN status = 'pending' THEN 1 END) as pending,
                    COUNT(CASE WHEN status = 'in_progress' THEN 1 END) as in_progress,
                    COUNT(CASE WHEN status = 'resolved' THEN 1 END) as resolved,
                    COUNT(CASE WHEN status = 'timeout' THEN 1 END) as timeout,
                    COUNT(*) as total,
                    AVG(CASE
                        WHEN status = 'resolved' AND resolved_at IS NOT NULL
                        THEN (julianday(resolved_at) - julianday(created_at)) * 24 * 60
                    END) as avg_resolution_minutes
                FROM help_requests
            """).fetchone()

        return LedgerStats(
            pending=result[0] or 0,
            in_progress=result[1] or 0,
            resolved=result[2] or 0,
            timeout=result[3] or 0,
            total=result[4] or 0,
            avg_resolution_minutes=round(result[5], 2) if result[5] else 0,
        )
