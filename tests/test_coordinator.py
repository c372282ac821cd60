"""Tests for EscalationCoordinator: escalation, learning loop and sweep."""

import asyncio
import threading

import pytest
from supervisor_desk.core.exceptions import DependencyError, DuplicateSessionError, InvalidStateError
from supervisor_desk.models.schemas import KnowledgeEntry, KnowledgeSource, RequestStatus, SessionEvent
from supervisor_desk.services.coordinator import LEARNED_CATEGORY


async def escalate_keratin(coordinator, session_id="s1"):
    return await coordinator.handle_unknown(
        question="Do you do keratin treatments?",
        caller_id="+15550001",
        caller_name="Dana",
        session_id=session_id,
    )


class TestSearch:
    """Tests for the public search operation."""

    @pytest.mark.asyncio
    async def test_keyword_fallback_answers_paraphrase(self, coordinator, store):
        store.upsert(KnowledgeEntry(question="What are your hours?", answer="9 to 7", category="hours"))

        result = await coordinator.search("when are you open")

        assert result.found is True
        assert result.answer == "9 to 7"
        assert result.category == "hours"
        assert result.confidence == 0.8

    @pytest.mark.asyncio
    async def test_unknown_question(self, coordinator):
        result = await coordinator.search("Do you sell gift cards?")

        assert result.found is False
        assert result.answer is None


class TestHandleUnknown:
    """Tests for escalation."""

    @pytest.mark.asyncio
    async def test_creates_request_notifies_and_emits_session_event(self, coordinator, notifier, session_events):
        request = await escalate_keratin(coordinator)

        assert request.status == RequestStatus.PENDING
        notifier.notify_human.assert_awaited_once_with(request)
        assert session_events == [SessionEvent(session_id="s1", request_id=request.id)]

    @pytest.mark.asyncio
    async def test_notifier_failure_keeps_request(self, coordinator, notifier):
        notifier.notify_human.side_effect = DependencyError("webhook down", dependency="webhook")

        request = await escalate_keratin(coordinator)

        assert [r.id for r in coordinator.list_pending()] == [request.id]

    @pytest.mark.asyncio
    async def test_session_listener_failure_is_isolated(self, coordinator, session_events, monkeypatch):
        def broken(event):
            raise RuntimeError("session store offline")

        monkeypatch.setattr(coordinator, "session_listener", broken)

        request = await escalate_keratin(coordinator)

        assert coordinator.get_request(request.id).status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_escalation_for_open_session_fails(self, coordinator, notifier):
        await escalate_keratin(coordinator, session_id="s1")

        with pytest.raises(DuplicateSessionError):
            await escalate_keratin(coordinator, session_id="s1")

        assert notifier.notify_human.await_count == 1
        assert len(coordinator.list_pending()) == 1

    @pytest.mark.asyncio
    async def test_escalate_alias(self, coordinator):
        request = await coordinator.escalate(question="Balayage?", caller_id="c1", session_id="s9")

        assert request.session_id == "s9"


class TestResolve:
    """Tests for resolution and the learning loop."""

    @pytest.mark.asyncio
    async def test_resolved_answer_is_learned(self, coordinator, notifier):
        request = await escalate_keratin(coordinator)

        result = await coordinator.resolve(request.id, "Yes, $120", "sup1")

        assert result.request.status == RequestStatus.RESOLVED
        assert result.request.resolved_at is not None
        assert result.learning_error is None
        assert result.knowledge_entry.category == LEARNED_CATEGORY
        assert result.knowledge_entry.source == KnowledgeSource.HUMAN_RESOLVED
        assert result.knowledge_entry.tags == ["keratin", "treatments"]
        assert result.knowledge_entry.created_by == "sup1"
        notifier.notify_caller_resolved.assert_awaited_once_with(
            "+15550001", "Do you do keratin treatments?", "Yes, $120"
        )

        search = await coordinator.search("Do you do keratin treatments?")
        assert search.found is True
        assert search.category == LEARNED_CATEGORY
        assert search.answer == "Yes, $120"

    @pytest.mark.asyncio
    async def test_resolve_twice(self, coordinator, notifier):
        request = await escalate_keratin(coordinator)
        await coordinator.resolve(request.id, "Yes, $120", "sup1")

        with pytest.raises(InvalidStateError):
            await coordinator.resolve(request.id, "Actually no", "sup2")

        assert notifier.notify_caller_resolved.await_count == 1

    @pytest.mark.asyncio
    async def test_store_failure_does_not_revert_resolution(self, coordinator, store, monkeypatch):
        request = await escalate_keratin(coordinator)

        def unavailable(entry):
            raise DependencyError("disk I/O error", dependency="sqlite")

        monkeypatch.setattr(store, "upsert", unavailable)

        result = await coordinator.resolve(request.id, "Yes, $120", "sup1")

        assert result.knowledge_entry is None
        assert "disk I/O error" in result.learning_error
        assert coordinator.get_request(request.id).status == RequestStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_caller_notification_failure_is_isolated(self, coordinator, notifier):
        notifier.notify_caller_resolved.side_effect = DependencyError("sms gateway down")
        request = await escalate_keratin(coordinator)

        result = await coordinator.resolve(request.id, "Yes, $120", "sup1")

        assert result.request.status == RequestStatus.RESOLVED
        assert result.knowledge_entry is not None

    @pytest.mark.asyncio
    async def test_claimed_request_can_be_resolved(self, coordinator):
        request = await escalate_keratin(coordinator)

        claimed = await coordinator.claim(request.id, "sup1")
        result = await coordinator.resolve(request.id, "Yes", "sup1")

        assert claimed.status == RequestStatus.IN_PROGRESS
        assert result.request.status == RequestStatus.RESOLVED


class TestTimeoutSweep:
    """Tests for the sweep and its background task."""

    @pytest.mark.asyncio
    async def test_sweep_notifies_each_caller(self, coordinator, notifier, clock):
        first = await escalate_keratin(coordinator, session_id="s1")
        second = await coordinator.handle_unknown(question="Balayage?", caller_id="+15550002", session_id="s2")
        clock.advance(minutes=31)
        notifier.notify_caller_timed_out.side_effect = [DependencyError("sms gateway down"), None]

        timed_out = await coordinator.run_timeout_sweep()

        assert {r.id for r in timed_out} == {first.id, second.id}
        assert notifier.notify_caller_timed_out.await_count == 2
        assert coordinator.list_pending() == []

        history = coordinator.list_history(status=RequestStatus.TIMEOUT)
        assert history.total == 2

    @pytest.mark.asyncio
    async def test_sweep_runs_off_the_event_loop_thread(self, coordinator, ledger, monkeypatch):
        threads = []

        def sweep(now=None):
            threads.append(threading.get_ident())
            return []

        monkeypatch.setattr(ledger, "sweep_timeouts", sweep)

        assert await coordinator.run_timeout_sweep() == []
        assert threads and threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_background_task_sweeps_and_stops(self, coordinator, notifier, clock):
        request = await escalate_keratin(coordinator)
        clock.advance(minutes=31)

        await coordinator.start()
        assert coordinator.is_running
        for _ in range(100):
            if coordinator.get_request(request.id).status == RequestStatus.TIMEOUT:
                break
            await asyncio.sleep(0.01)
        await coordinator.stop()

        assert not coordinator.is_running
        assert coordinator.get_request(request.id).status == RequestStatus.TIMEOUT
        notifier.notify_caller_timed_out.assert_awaited_once_with("+15550001", "Do you do keratin treatments?")

    @pytest.mark.asyncio
    async def test_background_task_survives_failing_sweep(self, coordinator, monkeypatch):
        calls = []

        async def flaky(now=None):
            calls.append(now)
            raise DependencyError("database is locked", dependency="sqlite")

        monkeypatch.setattr(coordinator, "run_timeout_sweep", flaky)

        await coordinator.start()
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await coordinator.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, coordinator):
        await coordinator.stop()
        await coordinator.start()
        await coordinator.start()
        await coordinator.stop()
        await coordinator.stop()

        assert not coordinator.is_running
