
from .knowledge_base import KnowledgeStore
from .matcher import Matcher
from .help_request import EscalationLedger
from .notification import LoggingNotifier, Notifier, WebhookNotifier
from .coordinator import EscalationCoordinator

__all__ = [
    "KnowledgeStore",
    "Matcher",
    "EscalationLedger",
    "Notifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "EscalationCoordinator",
]
