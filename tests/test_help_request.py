"""Tests for the EscalationLedger state machine."""

from datetime import datetime, timedelta, timezone
from threading import Barrier, Thread

import pytest
from supervisor_desk.core.exceptions import (
    DuplicateSessionError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from supervisor_desk.models.schemas import RequestStatus
from supervisor_desk.services import EscalationLedger


def open_request(ledger, session_id="s1", question="Do you do keratin treatments?", caller_id="+15550001"):
    return ledger.create(question=question, caller_id=caller_id, session_id=session_id)


class TestCreate:
    """Tests for opening help requests."""

    def test_create_pending_with_deadline(self, ledger, clock):
        request = ledger.create(
            question="Do you do keratin treatments?",
            caller_id="+15550001",
            caller_name="Dana",
            session_id="s1",
            context="asked twice",
            confidence_score=0.3,
        )

        assert request.status == RequestStatus.PENDING
        assert request.created_at == clock.now
        assert request.timeout_at == clock.now + timedelta(minutes=30)
        assert request.resolved_at is None
        assert request.caller_name == "Dana"
        assert request.metadata.attempted_knowledge_search is True
        assert request.metadata.confidence_score == 0.3
        assert request.metadata.context == "asked twice"

    def test_duplicate_open_session_rejected(self, ledger):
        open_request(ledger, session_id="s1")

        with pytest.raises(DuplicateSessionError) as exc_info:
            open_request(ledger, session_id="s1", question="Another question?")

        assert exc_info.value.session_id == "s1"
        assert len(ledger.list_pending()) == 1

    def test_session_reusable_after_terminal_state(self, ledger):
        first = open_request(ledger, session_id="s1")
        ledger.resolve(first.id, "Yes", "sup1")

        second = open_request(ledger, session_id="s1", question="Another question?")

        assert second.status == RequestStatus.PENDING

    def test_in_progress_session_still_counts_as_open(self, ledger):
        first = open_request(ledger, session_id="s1")
        ledger.claim(first.id, "sup1")

        with pytest.raises(DuplicateSessionError):
            open_request(ledger, session_id="s1")

    @pytest.mark.parametrize("field", ["question", "caller_id", "session_id"])
    def test_required_fields(self, ledger, field):
        kwargs = {"question": "Q?", "caller_id": "c1", "session_id": "s1"}
        kwargs[field] = "  "

        with pytest.raises(ValidationError):
            ledger.create(**kwargs)

    def test_confidence_score_range(self, ledger):
        with pytest.raises(ValidationError):
            ledger.create(question="Q?", caller_id="c1", session_id="s1", confidence_score=1.5)


class TestResolve:
    """Tests for resolving help requests."""

    def test_resolve_pending(self, ledger, clock):
        request = open_request(ledger)
        clock.advance(minutes=5)

        resolved = ledger.resolve(request.id, "Yes, $120", "sup1")

        assert resolved.status == RequestStatus.RESOLVED
        assert resolved.human_response == "Yes, $120"
        assert resolved.resolver_id == "sup1"
        assert resolved.resolved_at == clock.now

    def test_resolve_twice_fails_second_time(self, ledger):
        request = open_request(ledger)
        ledger.resolve(request.id, "Yes", "sup1")

        with pytest.raises(InvalidStateError) as exc_info:
            ledger.resolve(request.id, "No", "sup2")

        assert exc_info.value.status == "resolved"
        assert ledger.get(request.id).human_response == "Yes"

    def test_resolve_unknown_request(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.resolve(404, "Yes", "sup1")

    def test_resolve_requires_response(self, ledger):
        request = open_request(ledger)

        with pytest.raises(ValidationError):
            ledger.resolve(request.id, "   ", "sup1")

        assert ledger.get(request.id).status == RequestStatus.PENDING

    def test_claim_then_resolve(self, ledger):
        request = open_request(ledger)

        claimed = ledger.claim(request.id, "sup1")
        resolved = ledger.resolve(request.id, "Yes", "sup1")

        assert claimed.status == RequestStatus.IN_PROGRESS
        assert claimed.resolved_at is None
        assert resolved.status == RequestStatus.RESOLVED

    def test_claim_only_from_pending(self, ledger):
        request = open_request(ledger)
        ledger.claim(request.id, "sup1")

        with pytest.raises(InvalidStateError):
            ledger.claim(request.id, "sup2")

        with pytest.raises(NotFoundError):
            ledger.claim(999, "sup1")


class TestSweepTimeouts:
    """Tests for the timeout sweep."""

    def test_nothing_due(self, ledger, clock):
        open_request(ledger)

        assert ledger.sweep_timeouts(clock.now + timedelta(minutes=29)) == []

    def test_overdue_requests_time_out_once(self, ledger, clock):
        overdue = open_request(ledger, session_id="s1")
        clock.advance(minutes=10)
        fresh = open_request(ledger, session_id="s2")
        clock.advance(minutes=20)

        timed_out = ledger.sweep_timeouts()

        assert [r.id for r in timed_out] == [overdue.id]
        assert timed_out[0].status == RequestStatus.TIMEOUT
        assert timed_out[0].resolved_at is None
        assert ledger.get(fresh.id).status == RequestStatus.PENDING
        assert ledger.sweep_timeouts() == []

    def test_deadline_is_inclusive(self, ledger):
        request = open_request(ledger)

        assert [r.id for r in ledger.sweep_timeouts(request.timeout_at)] == [request.id]

    def test_in_progress_requests_also_time_out(self, ledger, clock):
        request = open_request(ledger)
        ledger.claim(request.id, "sup1")
        clock.advance(minutes=31)

        assert [r.id for r in ledger.sweep_timeouts()] == [request.id]

    def test_timed_out_request_cannot_be_resolved(self, ledger, clock):
        request = open_request(ledger)
        clock.advance(minutes=31)
        ledger.sweep_timeouts()

        with pytest.raises(InvalidStateError) as exc_info:
            ledger.resolve(request.id, "Too late", "sup1")

        assert exc_info.value.status == "timeout"

    def test_resolved_request_is_not_swept(self, ledger, clock):
        request = open_request(ledger)
        ledger.resolve(request.id, "Yes", "sup1")
        clock.advance(hours=2)

        assert ledger.sweep_timeouts() == []
        assert ledger.get(request.id).status == RequestStatus.RESOLVED


class TestResolveSweepRace:
    """Resolution racing the sweep must end in exactly one terminal state."""

    def test_concurrent_resolve_and_sweep(self, db_path):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        ledger = EscalationLedger(db_path=db_path, clock=lambda: past)
        for i in range(15):
            request = open_request(ledger, session_id=f"race-{i}")
            barrier = Barrier(2)
            outcome = {}

            def resolver():
                barrier.wait()
                try:
                    ledger.resolve(request.id, "Yes", "sup1")
                    outcome["resolved"] = True
                except InvalidStateError:
                    outcome["resolved"] = False

            def sweeper():
                barrier.wait()
                swept = ledger.sweep_timeouts(datetime.now(timezone.utc))
                outcome["swept"] = request.id in [r.id for r in swept]

            threads = [Thread(target=resolver), Thread(target=sweeper)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            final = ledger.get(request.id)
            assert outcome["resolved"] != outcome["swept"]
            if outcome["resolved"]:
                assert final.status == RequestStatus.RESOLVED
                assert final.resolved_at is not None
            else:
                assert final.status == RequestStatus.TIMEOUT
                assert final.resolved_at is None


class TestReadProjections:
    """Tests for pending lists, history and stats."""

    def test_list_pending_newest_first(self, ledger, clock):
        first = open_request(ledger, session_id="s1")
        clock.advance(minutes=1)
        second = open_request(ledger, session_id="s2")
        clock.advance(minutes=1)
        done = open_request(ledger, session_id="s3")
        ledger.resolve(done.id, "Yes", "sup1")

        assert [r.id for r in ledger.list_pending()] == [second.id, first.id]

    def test_history_filters_and_pagination(self, ledger, clock):
        ids = []
        for i in range(5):
            ids.append(open_request(ledger, session_id=f"s{i}", caller_id="c1" if i < 3 else "c2").id)
            clock.advance(minutes=1)
        ledger.resolve(ids[0], "Yes", "sup1")
        clock.advance(minutes=40)
        ledger.sweep_timeouts()

        page = ledger.list_history(limit=2, skip=1)
        assert page.total == 5
        assert [r.id for r in page.requests] == [ids[3], ids[2]]

        by_caller = ledger.list_history(caller_id="c1")
        assert by_caller.total == 3

        resolved = ledger.list_history(status=RequestStatus.RESOLVED)
        assert [r.id for r in resolved.requests] == [ids[0]]

        timed_out = ledger.list_history(status=RequestStatus.TIMEOUT, caller_id="c2")
        assert timed_out.total == 2

    def test_history_rejects_bad_pagination(self, ledger):
        with pytest.raises(ValidationError):
            ledger.list_history(limit=0)

    def test_get_unknown(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.get(1)

    def test_stats(self, ledger, clock):
        resolved = open_request(ledger, session_id="s1")
        open_request(ledger, session_id="s2")
        clock.advance(minutes=10)
        ledger.resolve(resolved.id, "Yes", "sup1")

        stats = ledger.stats()

        assert stats.pending == 1
        assert stats.resolved == 1
        assert stats.timeout == 0
        assert stats.total == 2
        assert stats.avg_resolution_minutes == pytest.approx(10, abs=0.01)
