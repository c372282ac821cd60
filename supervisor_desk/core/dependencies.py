from datetime import timedelta

from supervisor_desk.services import (
    EscalationCoordinator,
    EscalationLedger,
    KnowledgeStore,
    LoggingNotifier,
    Matcher,
    Notifier,
    WebhookNotifier,
)
from .config import settings

# Singleton instances (initialized once)
_knowledge_store = None
_ledger = None
_coordinator = None


def get_knowledge_store() -> KnowledgeStore:
    """
    Dependency for the knowledge store
    Returns singleton instance
    """
    global _knowledge_store
    if _knowledge_store is None:
        _knowledge_store = KnowledgeStore(
            db_path=settings.database_path,
            timeout=settings.database_timeout_seconds
        )
    return _knowledge_store


def get_ledger() -> EscalationLedger:
    """
    Dependency for the help request ledger
    Returns singleton instance
    """
    global _ledger
    if _ledger is None:
        _ledger = EscalationLedger(
            db_path=settings.database_path,
            escalation_window=timedelta(minutes=settings.escalation_window_minutes),
            timeout=settings.database_timeout_seconds
        )
    return _ledger


def build_notifier() -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds
        )
    return LoggingNotifier()


def get_coordinator() -> EscalationCoordinator:
    """
    Dependency for the escalation coordinator
    Returns singleton instance
    """
    global _coordinator
    if _coordinator is None:
        store = get_knowledge_store()
        _coordinator = EscalationCoordinator(
            store=store,
            matcher=Matcher(
                store,
                confidence_threshold=settings.confidence_threshold,
                category_keywords=settings.category_keywords
            ),
            ledger=get_ledger(),
            notifier=build_notifier(),
            sweep_interval_seconds=settings.sweep_interval_seconds
        )
    return _coordinator


def reset_dependencies():
    """Drop the singletons so the next call rebuilds them from current settings"""
    global _knowledge_store, _ledger, _coordinator
    _knowledge_store = None
    _ledger = None
    _coordinator = None
